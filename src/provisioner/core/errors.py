"""
Structured error types for the provisioner.

Every failure the job pipeline can surface is a ``ProvisionerError``
subclass carrying a category, a retry hint and a structured context, so
callers (CLI, API, an admission controller) can react to the *kind* of
failure instead of parsing messages.

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                      ProvisionerError                         │
        │        (category, retryable, context, cause)                  │
        ├──────────────────────────────────────────────────────────────┤
        │  BackendUnavailableError   UnitConflictError   WaitError      │
        │  (BACKEND)                 (CONFLICT)          (WAIT)         │
        │                                                               │
        │  ArtifactNotFoundError     StreamReadError     PublishError   │
        │  (ARTIFACT)                (STREAM)            (STORAGE)      │
        │                                                               │
        │  JobTimeoutError           BackendCommandError                │
        │  (TIMEOUT)                 (BACKEND)                          │
        │                                                               │
        │  ConfigError ─ InvalidConfigError, InvalidJobError (CONFIG)   │
        │  InvalidTransitionError (INTERNAL)                            │
        └──────────────────────────────────────────────────────────────┘

Propagation is fail-fast: nothing in this package retries. ``retryable``
is only a hint for whoever submitted the job.

Usage:
    from provisioner.core.errors import ArtifactNotFoundError

    raise ArtifactNotFoundError(
        "Artifact missing from unit",
    ).with_context(unit_id=unit.unit_id, path="/puppeteer/reviews/0_x.csv")
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Error categories used for routing and reporting."""

    BACKEND = "BACKEND"           # Daemon unreachable, command failed
    CONFLICT = "CONFLICT"         # Unit identity collision
    WAIT = "WAIT"                 # Backend failure while awaiting completion
    ARTIFACT = "ARTIFACT"         # Expected output missing
    STREAM = "STREAM"             # Archive transport corrupt or truncated
    STORAGE = "STORAGE"           # Durable storage write failed
    TIMEOUT = "TIMEOUT"           # Job deadline exceeded
    CANCELLED = "CANCELLED"       # Job cancel token fired
    CONFIG = "CONFIG"             # Invalid settings or job parameters
    INTERNAL = "INTERNAL"         # Bugs, unexpected state


@dataclass
class ErrorContext:
    """Structured metadata attached to an error.

    Only non-None fields are serialized. Anything without a dedicated
    field goes into ``metadata``.
    """

    job_id: str | None = None
    unit_id: str | None = None
    work_name: str | None = None
    upload_identifier: str | None = None
    path: str | None = None
    step: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for key in ("job_id", "unit_id", "work_name", "upload_identifier", "path", "step"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        result.update(self.metadata)
        return result


class ProvisionerError(Exception):
    """Base class for all provisioner errors.

    Subclasses set ``default_category`` and ``default_retryable``; both can
    be overridden per instance.

    Args:
        message: Human-readable description.
        category: Overrides the class default category.
        retryable: Overrides the class default retry hint.
        context: Structured metadata.
        cause: Underlying exception, chained as ``__cause__``.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False
    kind: str = "Internal"

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> ProvisionerError:
        """Add context to this error (fluent API)."""
        for key, value in kwargs.items():
            if key != "metadata" and hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "kind": self.kind,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# BACKEND ERRORS
# =============================================================================


class BackendUnavailableError(ProvisionerError):
    """The execution backend cannot be reached (daemon down, socket gone)."""

    default_category = ErrorCategory.BACKEND
    kind = "BackendUnavailable"
    default_retryable = True


class BackendCommandError(ProvisionerError):
    """A backend operation failed for a reason with no dedicated type."""

    default_category = ErrorCategory.BACKEND
    kind = "BackendCommand"

    def __init__(self, message: str, *, exit_code: int | None = None, stderr: str = "", **kwargs: Any):
        super().__init__(message, **kwargs)
        self.exit_code = exit_code
        self.stderr = stderr


class UnitConflictError(ProvisionerError):
    """The unit identity collides with an existing or running unit."""

    default_category = ErrorCategory.CONFLICT
    kind = "UnitConflict"


class WaitError(ProvisionerError):
    """The backend reported a failure while waiting for the unit to exit."""

    default_category = ErrorCategory.WAIT
    kind = "WaitError"
    default_retryable = True


# =============================================================================
# ARTIFACT ERRORS
# =============================================================================


class ArtifactNotFoundError(ProvisionerError):
    """The unit's filesystem does not hold the expected artifact."""

    default_category = ErrorCategory.ARTIFACT
    kind = "ArtifactNotFound"


class StreamReadError(ProvisionerError):
    """The archive stream was corrupt, truncated or failed in transit."""

    default_category = ErrorCategory.STREAM
    kind = "StreamReadError"
    default_retryable = True


class PublishError(ProvisionerError):
    """Writing the artifact to durable storage failed."""

    default_category = ErrorCategory.STORAGE
    kind = "PublishError"
    default_retryable = True


# =============================================================================
# CONTROL ERRORS
# =============================================================================


class JobTimeoutError(ProvisionerError):
    """The job did not finish within its deadline."""

    default_category = ErrorCategory.TIMEOUT
    kind = "TimedOut"

    def __init__(
        self,
        timeout: float,
        elapsed: float | None = None,
        operation: str = "job",
        **kwargs: Any,
    ):
        self.timeout = timeout
        self.elapsed = elapsed
        self.operation = operation

        msg = f"Operation '{operation}' timed out after {timeout}s"
        if elapsed is not None:
            msg += f" (ran for {elapsed:.2f}s)"
        super().__init__(msg, **kwargs)


class JobCancelledError(ProvisionerError):
    """The job's cancel token was cancelled before the job finished."""

    default_category = ErrorCategory.CANCELLED
    kind = "Cancelled"

    def __init__(self, reason: str = "cancelled", operation: str = "job", **kwargs: Any):
        self.reason = reason
        self.operation = operation
        super().__init__(f"Operation '{operation}' cancelled: {reason}", **kwargs)


class InvalidTransitionError(ProvisionerError):
    """A unit was asked to move back to an earlier lifecycle state."""

    default_category = ErrorCategory.INTERNAL
    kind = "InvalidTransition"


class ConfigError(ProvisionerError):
    """Invalid settings."""

    default_category = ErrorCategory.CONFIG
    kind = "Config"


class InvalidConfigError(ConfigError):
    """A configuration value is present but not acceptable."""

    def __init__(self, key: str, value: Any, message: str | None = None):
        super().__init__(message or f"Invalid value for {key}: {value!r}")
        self.key = key
        self.value = value


class InvalidJobError(ConfigError):
    """Job parameters cannot be turned into a unit (e.g. unparseable URL)."""
