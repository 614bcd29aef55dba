"""Per-job deadlines and cancellation tokens.

A job gets exactly one ``CancelToken`` when it starts. The token carries
the job deadline and a cancelled flag, and is handed to every backend
call so long-running operations (``docker wait``, archive streaming) can
bound themselves by the time the job has left.

Architecture:
    ::

        ProvisionRunner.run(job)
          │
          ├── CancelToken(deadline=Deadline.after(3600))
          │
          ├── lifecycle.provisioned(spec, token=token)
          │     │
          │     ├── async with token.scope("job"):  ← asyncio.timeout
          │     │       backend.start(unit_id, token)
          │     │       backend.wait(unit_id, token)  ← remaining() bounds it
          │     │       backend.copy_out(unit_id, path, token)
          │     │
          │     └── finally: lifecycle.remove(unit)  ← outside the scope

Examples:
    >>> token = CancelToken.with_timeout(30.0)
    >>> async with token.scope("extract"):
    ...     await extractor.extract(unit, path, prefix, token=token)
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from provisioner.core.errors import JobCancelledError, JobTimeoutError


@dataclass
class Deadline:
    """Absolute deadline on the monotonic clock.

    Attributes:
        deadline: Absolute deadline timestamp (monotonic clock)
        timeout_seconds: Original timeout value in seconds
        start_time: When the deadline started
    """

    deadline: float
    timeout_seconds: float
    start_time: float = field(default_factory=time.monotonic)

    @classmethod
    def after(cls, seconds: float) -> Deadline:
        if seconds <= 0:
            raise ValueError(f"Timeout must be positive, got {seconds}")
        now = time.monotonic()
        return cls(deadline=now + seconds, timeout_seconds=seconds, start_time=now)

    def remaining(self) -> float:
        """Seconds left; negative once expired."""
        return self.deadline - time.monotonic()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.start_time

    def is_expired(self) -> bool:
        return time.monotonic() >= self.deadline


class CancelToken:
    """Cancellation token scoped to a single job.

    Holds an optional ``Deadline`` and an explicit cancelled flag. Nothing
    here is shared between jobs. ``cancel()`` interrupts every block
    currently running under ``scope()``; outside a scope it is observed by
    ``check()`` and ``wait_cancelled()``.
    """

    def __init__(self, deadline: Deadline | None = None) -> None:
        self.deadline = deadline
        self._cancelled = asyncio.Event()
        self._interrupts: list[Callable[[], None]] = []
        self.reason: str | None = None

    @classmethod
    def with_timeout(cls, seconds: float | None) -> CancelToken:
        return cls(Deadline.after(seconds) if seconds else None)

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cancellation. Idempotent; the first reason is kept."""
        if self._cancelled.is_set():
            return
        self.reason = reason
        self._cancelled.set()
        for interrupt in list(self._interrupts):
            interrupt()

    async def wait_cancelled(self) -> None:
        await self._cancelled.wait()

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None when unbounded."""
        if self.deadline is None:
            return None
        return max(self.deadline.remaining(), 0.0)

    def timeout_for(self, ceiling: float | None) -> float | None:
        """Effective timeout for one call: the smaller of ``ceiling`` and
        the time left on the job."""
        remaining = self.remaining()
        if remaining is None:
            return ceiling
        if ceiling is None:
            return remaining
        return min(ceiling, remaining)

    def check(self, operation: str = "job") -> None:
        """Raise ``JobTimeoutError`` if expired, ``JobCancelledError`` if
        cancelled."""
        if self.deadline is not None and self.deadline.is_expired():
            raise JobTimeoutError(
                timeout=self.deadline.timeout_seconds,
                elapsed=self.deadline.elapsed,
                operation=operation,
            )
        if self.cancelled:
            raise JobCancelledError(self.reason or "cancelled", operation=operation)

    @asynccontextmanager
    async def scope(self, operation: str = "job") -> AsyncIterator[CancelToken]:
        """Run a block under this token's deadline and cancel flag.

        Uses ``asyncio.timeout``; expiry surfaces as ``JobTimeoutError``.
        ``cancel()`` cancels the enclosing task and surfaces as
        ``JobCancelledError``; a task cancellation from outside still
        propagates as ``CancelledError``. Cleanup that must outlive the
        deadline belongs outside the block.
        """
        self.check(operation)
        task = asyncio.current_task()
        interrupted = False

        def interrupt() -> None:
            nonlocal interrupted
            if task is not None and not task.done() and not interrupted:
                interrupted = True
                task.cancel()

        self._interrupts.append(interrupt)
        try:
            async with asyncio.timeout(self.remaining()):
                yield self
        except TimeoutError:
            self._interrupts.remove(interrupt)
            self.cancel("deadline exceeded")
            raise JobTimeoutError(
                timeout=self.deadline.timeout_seconds if self.deadline else 0.0,
                elapsed=self.deadline.elapsed if self.deadline else None,
                operation=operation,
            ) from None
        except asyncio.CancelledError:
            if interrupted and task is not None and task.uncancel() == 0:
                raise JobCancelledError(self.reason or "cancelled", operation=operation) from None
            raise
        finally:
            if interrupt in self._interrupts:
                self._interrupts.remove(interrupt)
