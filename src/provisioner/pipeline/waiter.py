"""Completion waiter.

Waits for a started unit to leave RUNNING by racing these events:

- the backend's status signal (the unit exited, with an exit code)
- the backend's error signal (watching failed)
- the job deadline
- an explicit ``cancel()`` on the job's token

Whichever fires first decides the ``WaitResult``. The watch is cancelled
afterwards, so no signal outlives the wait.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

import structlog

from provisioner.core.errors import JobCancelledError, JobTimeoutError, ProvisionerError, WaitError

if TYPE_CHECKING:
    from provisioner.backend._types import ExecutionBackend, ExecutionUnit
    from provisioner.execution.deadline import CancelToken

logger = structlog.get_logger(__name__)


class WaitOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class WaitResult:
    """How a wait ended.

    Attributes:
        outcome: Which signal won the race
        exit_code: Unit exit code (COMPLETED only)
        error: Backend failure (FAILED only)
        waited_seconds: Time spent waiting
        reason: Why the token was cancelled (CANCELLED only)
    """

    outcome: WaitOutcome
    exit_code: int | None = None
    error: BaseException | None = None
    waited_seconds: float = 0.0
    reason: str | None = None

    @property
    def completed(self) -> bool:
        return self.outcome is WaitOutcome.COMPLETED

    def raise_for_outcome(self, timeout: float | None = None) -> None:
        """Raise ``WaitError`` on FAILED, ``JobTimeoutError`` on TIMED_OUT and
        ``JobCancelledError`` on CANCELLED."""
        if self.outcome is WaitOutcome.FAILED:
            if isinstance(self.error, WaitError):
                raise self.error
            raise WaitError(
                f"Waiting for unit failed: {self.error}",
                cause=self.error if isinstance(self.error, Exception) else None,
            )
        if self.outcome is WaitOutcome.TIMED_OUT:
            raise JobTimeoutError(
                timeout=timeout if timeout is not None else self.waited_seconds,
                elapsed=self.waited_seconds,
                operation="wait",
            )
        if self.outcome is WaitOutcome.CANCELLED:
            raise JobCancelledError(self.reason or "cancelled", operation="wait")


class CompletionWaiter:
    """Structured select over a unit's completion signals."""

    def __init__(self, backend: ExecutionBackend) -> None:
        self._backend = backend

    async def wait(
        self,
        unit: ExecutionUnit,
        *,
        token: CancelToken | None = None,
        timeout: float | None = None,
    ) -> WaitResult:
        """Block until the unit stops, watching fails, the token is cancelled
        or time runs out.

        ``timeout`` is capped by the time left on ``token``. Errors raised
        while setting up the watch are reported as FAILED.
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        bound = token.timeout_for(timeout) if token is not None else timeout

        try:
            handle = await self._backend.wait(unit.unit_id, token)
        except ProvisionerError as exc:
            logger.warning("unit.wait_failed", error=str(exc))
            return WaitResult(WaitOutcome.FAILED, error=exc)

        signals: set[asyncio.Future[object]] = {handle.status, handle.error}
        cancelled = asyncio.ensure_future(token.wait_cancelled()) if token is not None else None
        if cancelled is not None:
            signals.add(cancelled)
        try:
            done, _ = await asyncio.wait(
                signals,
                timeout=bound,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            handle.cancel()
            if cancelled is not None:
                cancelled.cancel()

        waited = loop.time() - started
        # status wins a tie; the unit did exit
        if handle.status in done and not handle.status.cancelled():
            exit_code = handle.status.result()
            logger.info("unit.wait_completed", exit_code=exit_code, waited_seconds=round(waited, 3))
            return WaitResult(WaitOutcome.COMPLETED, exit_code=exit_code, waited_seconds=waited)
        if handle.error in done and not handle.error.cancelled():
            error = handle.error.result()
            logger.warning("unit.wait_failed", error=str(error))
            return WaitResult(WaitOutcome.FAILED, error=error, waited_seconds=waited)
        if cancelled is not None and cancelled in done:
            logger.warning("unit.wait_cancelled", reason=token.reason, waited_seconds=round(waited, 3))
            return WaitResult(WaitOutcome.CANCELLED, waited_seconds=waited, reason=token.reason)

        logger.warning("unit.wait_timed_out", waited_seconds=round(waited, 3))
        return WaitResult(WaitOutcome.TIMED_OUT, waited_seconds=waited)
