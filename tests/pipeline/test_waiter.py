"""Tests for CompletionWaiter: status vs error vs deadline."""

from __future__ import annotations

import asyncio

import pytest

from provisioner.backend._types import ExecutionUnit
from provisioner.backend.memory import InMemoryBackend
from provisioner.core.errors import BackendUnavailableError, JobCancelledError, JobTimeoutError, WaitError
from provisioner.execution.deadline import CancelToken
from provisioner.pipeline.lifecycle import UnitLifecycle
from provisioner.pipeline.waiter import CompletionWaiter, WaitOutcome, WaitResult
from tests._support.builders import scraper


async def _started(backend: InMemoryBackend) -> ExecutionUnit:
    lifecycle = UnitLifecycle(backend)
    unit = await lifecycle.create("scraper", {"HOTEL_NAME": "hotel-123"})
    await lifecycle.start(unit)
    return unit


class TestCompletionWaiter:
    @pytest.mark.asyncio
    async def test_completed(self) -> None:
        backend = InMemoryBackend(program=scraper(b"row\n"))
        unit = await _started(backend)

        result = await CompletionWaiter(backend).wait(unit)

        assert result.outcome is WaitOutcome.COMPLETED
        assert result.exit_code == 0
        assert result.completed
        result.raise_for_outcome()

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_completed(self) -> None:
        backend = InMemoryBackend(program=scraper(None, exit_code=3))
        unit = await _started(backend)
        result = await CompletionWaiter(backend).wait(unit)
        assert result.outcome is WaitOutcome.COMPLETED
        assert result.exit_code == 3

    @pytest.mark.asyncio
    async def test_error_signal(self) -> None:
        backend = InMemoryBackend(hang=True, wait_error=WaitError("event stream broke"))
        unit = await _started(backend)

        result = await CompletionWaiter(backend).wait(unit, timeout=5)

        assert result.outcome is WaitOutcome.FAILED
        assert isinstance(result.error, WaitError)
        with pytest.raises(WaitError, match="event stream broke"):
            result.raise_for_outcome()
        await backend.remove(unit.unit_id)

    @pytest.mark.asyncio
    async def test_foreign_error_wrapped(self) -> None:
        result = WaitResult(WaitOutcome.FAILED, error=BackendUnavailableError("gone"))
        with pytest.raises(WaitError) as exc_info:
            result.raise_for_outcome()
        assert isinstance(exc_info.value.cause, BackendUnavailableError)

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        backend = InMemoryBackend(hang=True)
        unit = await _started(backend)

        result = await CompletionWaiter(backend).wait(unit, timeout=0.05)

        assert result.outcome is WaitOutcome.TIMED_OUT
        assert result.waited_seconds >= 0.04
        with pytest.raises(JobTimeoutError):
            result.raise_for_outcome(0.05)
        await backend.remove(unit.unit_id)

    @pytest.mark.asyncio
    async def test_token_caps_timeout(self) -> None:
        backend = InMemoryBackend(hang=True)
        unit = await _started(backend)
        token = CancelToken.with_timeout(0.05)

        result = await CompletionWaiter(backend).wait(unit, token=token, timeout=60)

        assert result.outcome is WaitOutcome.TIMED_OUT
        await backend.remove(unit.unit_id)

    @pytest.mark.asyncio
    async def test_setup_failure_is_failed(self) -> None:
        backend = InMemoryBackend()
        unit = await _started(backend)
        backend.unavailable = True

        result = await CompletionWaiter(backend).wait(unit)

        assert result.outcome is WaitOutcome.FAILED
        assert isinstance(result.error, BackendUnavailableError)

    @pytest.mark.asyncio
    async def test_token_cancel_ends_a_blocked_wait(self) -> None:
        backend = InMemoryBackend(hang=True)
        unit = await _started(backend)
        token = CancelToken.with_timeout(60)
        asyncio.get_running_loop().call_later(0.05, token.cancel, "user cancel")

        result = await asyncio.wait_for(CompletionWaiter(backend).wait(unit, token=token), 1.0)

        assert result.outcome is WaitOutcome.CANCELLED
        assert result.reason == "user cancel"
        assert result.waited_seconds < 1.0
        with pytest.raises(JobCancelledError, match="user cancel"):
            result.raise_for_outcome()
        await backend.remove(unit.unit_id)
