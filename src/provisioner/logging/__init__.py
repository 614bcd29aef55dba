"""Structured logging (structlog) with per-job context."""

from provisioner.logging.config import configure_logging, is_configured
from provisioner.logging.context import (
    LogContext,
    add_context_processor,
    bind_context,
    clear_context,
    get_context,
    log_context,
)

__all__ = [
    "LogContext",
    "add_context_processor",
    "bind_context",
    "clear_context",
    "configure_logging",
    "get_context",
    "is_configured",
    "log_context",
]
