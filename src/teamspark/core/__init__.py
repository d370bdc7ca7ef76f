"""Core primitives shared by every layer: logging, errors, settings, connections."""

from teamspark.core.errors import (
    BackendError,
    ConfigError,
    EnqueueError,
    ErrorCategory,
    PayloadValidationError,
    ProviderError,
    QueueClosedError,
    TeamSparkError,
    TransientError,
    UnknownJobKindError,
    UnrecoverableJobError,
    ValidationError,
)
from teamspark.core.logging import (
    LogContext,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
)

__all__ = [
    "BackendError",
    "ConfigError",
    "EnqueueError",
    "ErrorCategory",
    "LogContext",
    "PayloadValidationError",
    "ProviderError",
    "QueueClosedError",
    "TeamSparkError",
    "TransientError",
    "UnknownJobKindError",
    "UnrecoverableJobError",
    "ValidationError",
    "bind_context",
    "clear_context",
    "configure_logging",
    "get_logger",
]
