"""Core primitives: error taxonomy and settings."""

from provisioner.core.errors import (
    ArtifactNotFoundError,
    BackendCommandError,
    BackendUnavailableError,
    ConfigError,
    ErrorCategory,
    ErrorContext,
    InvalidConfigError,
    InvalidJobError,
    InvalidTransitionError,
    JobCancelledError,
    JobTimeoutError,
    ProvisionerError,
    PublishError,
    StreamReadError,
    UnitConflictError,
    WaitError,
)
from provisioner.core.settings import (
    ProvisionerSettings,
    StorageSettings,
    get_settings,
    get_storage_settings,
)

__all__ = [
    "ArtifactNotFoundError",
    "BackendCommandError",
    "BackendUnavailableError",
    "ConfigError",
    "ErrorCategory",
    "ErrorContext",
    "InvalidConfigError",
    "InvalidJobError",
    "InvalidTransitionError",
    "JobCancelledError",
    "JobTimeoutError",
    "ProvisionerError",
    "ProvisionerSettings",
    "PublishError",
    "StorageSettings",
    "StreamReadError",
    "UnitConflictError",
    "WaitError",
    "get_settings",
    "get_storage_settings",
]
