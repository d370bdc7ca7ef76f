"""
Error hierarchy for the job core.

Every error raised by the queue, scheduler, worker pool, and handlers
derives from :class:`TeamSparkError` and carries a category plus an
explicit ``retryable`` flag. The worker pool reads that flag when a
handler raises: ``retryable=False`` fails the job at once, anything else
goes through the queue's retry policy.

Hierarchy::

    TeamSparkError
    ├── TransientError (retryable)
    │   ├── BackendError
    │   │   └── EnqueueError
    │   └── ProviderError
    ├── QueueClosedError
    ├── ValidationError
    │   └── PayloadValidationError
    ├── ConfigError
    ├── UnknownJobKindError
    └── UnrecoverableJobError

Examples:
    >>> err = ProviderError("resend returned 503").with_context(queue="send-email")
    >>> err.retryable
    True
    >>> err.to_dict()["context"]
    {'queue': 'send-email'}
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Classification used for routing and alerting."""

    BACKEND = "BACKEND"
    VALIDATION = "VALIDATION"
    CONFIG = "CONFIG"
    SCHEDULING = "SCHEDULING"
    HANDLER = "HANDLER"
    PROVIDER = "PROVIDER"
    INTERNAL = "INTERNAL"


class TeamSparkError(Exception):
    """
    Base exception for the job core.

    Subclasses set ``default_category`` and ``default_retryable``; both can
    be overridden per instance.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: float | None = None,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context: dict[str, Any] = dict(context or {})
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> TeamSparkError:
        """
        Add context to this error (fluent API).

        Usage:
            raise EnqueueError("add failed").with_context(queue="send-email", name="welcome")
        """
        self.context.update(kwargs)
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        if self.context:
            result["context"] = dict(self.context)
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# TRANSIENT ERRORS (Retryable)
# =============================================================================


class TransientError(TeamSparkError):
    """Temporary failure that may succeed when attempted again."""

    default_category = ErrorCategory.BACKEND
    default_retryable = True


class BackendError(TransientError):
    """The durable queue store could not be reached or rejected a command."""

    default_category = ErrorCategory.BACKEND


class EnqueueError(BackendError):
    """A job could not be persisted. Callers must treat this as data-loss risk."""


class ProviderError(TransientError):
    """An outbound call to an email/messaging/directory provider failed."""

    default_category = ErrorCategory.PROVIDER

    def __init__(self, message: str, *, status_code: int | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.status_code = status_code
        if status_code is not None:
            self.context.setdefault("status_code", status_code)


# =============================================================================
# PERMANENT ERRORS
# =============================================================================


class QueueClosedError(TeamSparkError):
    """Enqueue attempted on a queue that has been closed."""


class ValidationError(TeamSparkError):
    """Input failed validation."""

    default_category = ErrorCategory.VALIDATION

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        value: Any = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.field:
            result["field"] = self.field
        return result


class PayloadValidationError(ValidationError):
    """A payload does not match the shape its job kind requires."""


class ConfigError(TeamSparkError):
    """Invalid or missing configuration."""

    default_category = ErrorCategory.CONFIG


class UnknownJobKindError(TeamSparkError):
    """A job kind with no mapped queue. Programming error, never retried."""

    default_category = ErrorCategory.SCHEDULING

    def __init__(self, kind: Any):
        super().__init__(f"No queue is mapped for job kind {kind!r}")
        self.kind = kind


class UnrecoverableJobError(TeamSparkError):
    """Raised by a handler to fail its job without using the remaining attempts."""

    default_category = ErrorCategory.HANDLER


def is_retryable(error: BaseException) -> bool:
    """Whether a handler exception should go through the retry policy.

    Errors outside the hierarchy count as retryable: a handler that raises a
    plain ``TimeoutError`` expects another attempt.
    """
    return getattr(error, "retryable", True) is not False


__all__ = [
    "ErrorCategory",
    "TeamSparkError",
    "TransientError",
    "BackendError",
    "EnqueueError",
    "ProviderError",
    "QueueClosedError",
    "ValidationError",
    "PayloadValidationError",
    "ConfigError",
    "UnknownJobKindError",
    "UnrecoverableJobError",
    "is_retryable",
]
