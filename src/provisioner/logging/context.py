"""
Logging context management using contextvars.

Job-level identifiers (job id, unit id, work name, upload identifier,
current step) are attached to every log entry emitted while a job runs,
without threading them through each call.

Each asyncio task runs in a copy of the context it was created from, so
two jobs running concurrently never see each other's identifiers.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import asdict, dataclass
from typing import Any


@dataclass(frozen=True)
class LogContext:
    """Identifiers attached to all log entries for one job."""

    job_id: str | None = None
    unit_id: str | None = None
    work_name: str | None = None
    upload_identifier: str | None = None
    step: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return non-None fields as dict."""
        return {k: v for k, v in asdict(self).items() if v is not None}

    def merge(self, **kwargs: Any) -> LogContext:
        """Create new context with merged values."""
        current = asdict(self)
        current.update({k: v for k, v in kwargs.items() if v is not None})
        return LogContext(**current)


_log_context: ContextVar[LogContext] = ContextVar("provisioner_log_context")  # noqa: B039


def get_context() -> LogContext:
    """Get the current log context."""
    return _log_context.get(LogContext())


def bind_context(**kwargs: Any) -> LogContext:
    """Merge values into the current context and return the new one."""
    ctx = get_context().merge(**kwargs)
    _log_context.set(ctx)
    return ctx


def clear_context() -> None:
    _log_context.set(LogContext())


@contextmanager
def log_context(**kwargs: Any) -> Iterator[LogContext]:
    """Bind values for the duration of a block, then restore.

    Example:
        >>> with log_context(step="extract"):
        ...     logger.info("artifact.extracting")
    """
    token = _log_context.set(get_context().merge(**kwargs))
    try:
        yield _log_context.get()
    finally:
        _log_context.reset(token)


def add_context_processor(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """structlog processor: merge the current job context into the event.

    Explicit keys passed to the log call win over context values.
    """
    for key, value in get_context().to_dict().items():
        event_dict.setdefault(key, value)
    return event_dict
