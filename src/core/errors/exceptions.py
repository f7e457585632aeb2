"""
Exception hierarchy and error classification.

Every failure a worker can hit is mapped to one ErrorCategory, which decides
whether the message is retried locally or routed to the dead-letter topic:

    TransientIOError   -> TRANSIENT (retry with backoff)
    ThrottlingError    -> TRANSIENT (retry, honouring retry_after)
    ValidationError    -> PERMANENT (dead-letter immediately)
    AuthorizationError -> AUTH      (dead-letter / surface to caller)
    NotFoundError      -> PERMANENT

Third-party exceptions are classified by type first and by message markers
second (see classify_exception).
"""

import asyncio
from typing import Any

import pydantic

from core.types import ErrorCategory

__all__ = [
    "ErrorCategory",
    "PipelineError",
    "TransientIOError",
    "ThrottlingError",
    "ValidationError",
    "AuthorizationError",
    "NotFoundError",
    "classify_exception",
    "classify_http_status",
    "is_transient_error",
    "is_retryable_error",
    "wrap_exception",
    "describe_validation_error",
]


class PipelineError(Exception):
    """Base class for all pipeline errors.

    Args:
        message: Human readable description
        cause: Underlying exception, if any
        context: Extra key/values for logging (event_id, partition, ...)
    """

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        context: dict[str, Any] | None = None,
    ):
        self.message = message
        self.cause = cause
        self.context = context or {}
        full = message
        if cause is not None:
            full = f"{message} (Caused by: {type(cause).__name__}: {cause})"
        super().__init__(full)

    @property
    def is_retryable(self) -> bool:
        return self.category in (ErrorCategory.TRANSIENT, ErrorCategory.UNKNOWN)


class TransientIOError(PipelineError):
    """Timeouts, throttling and unavailability of an external store or queue."""

    category = ErrorCategory.TRANSIENT


class ThrottlingError(TransientIOError):
    """Rate limited by a downstream service (HTTP 429 or equivalent)."""

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        cause: Exception | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, cause=cause, context=context)
        self.retry_after = retry_after


class ValidationError(PipelineError):
    """Malformed envelope or schema violation. Never retried."""

    category = ErrorCategory.PERMANENT


class AuthorizationError(PipelineError):
    """Caller or message lacks the required authorization. Never retried."""

    category = ErrorCategory.AUTH


class NotFoundError(PipelineError):
    """Requested item (e.g. a dead-letter message) does not exist."""

    category = ErrorCategory.PERMANENT


_TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "429",
    "throttl",
    "rate limit",
    "500",
    "502",
    "503",
    "504",
    "unavailable",
    "connection reset",
    "connection refused",
    "temporarily",
)

_AUTH_MARKERS = ("401", "unauthorized", "forbidden", "permission denied")

_PERMANENT_MARKERS = ("schema", "invalid", "malformed", "404", "not found")


def classify_http_status(status: int) -> ErrorCategory:
    """Map an HTTP status code to an error category."""
    if status < 300:
        return ErrorCategory.UNKNOWN
    if status == 401:
        return ErrorCategory.AUTH
    if status == 429 or status >= 500:
        return ErrorCategory.TRANSIENT
    if status >= 400:
        return ErrorCategory.PERMANENT
    return ErrorCategory.UNKNOWN


def classify_exception(exc: BaseException) -> ErrorCategory:
    """Classify an arbitrary exception.

    Order: our own hierarchy, pydantic validation, well-known transport
    errors, objects carrying an HTTP status, Kafka's retriable flag, and
    finally message markers.
    """
    if isinstance(exc, PipelineError):
        return exc.category
    if isinstance(exc, pydantic.ValidationError):
        return ErrorCategory.PERMANENT
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return ErrorCategory.TRANSIENT

    status = getattr(exc, "status", None)
    if isinstance(status, int):
        category = classify_http_status(status)
        if category != ErrorCategory.UNKNOWN:
            return category

    # aiokafka errors expose a class-level retriable flag
    if getattr(exc, "retriable", False) is True:
        return ErrorCategory.TRANSIENT

    text = str(exc).lower()
    if any(marker in text for marker in _AUTH_MARKERS):
        return ErrorCategory.AUTH
    if any(marker in text for marker in _TRANSIENT_MARKERS):
        return ErrorCategory.TRANSIENT
    if any(marker in text for marker in _PERMANENT_MARKERS):
        return ErrorCategory.PERMANENT
    return ErrorCategory.UNKNOWN


def is_transient_error(exc: BaseException) -> bool:
    return classify_exception(exc) == ErrorCategory.TRANSIENT


def is_retryable_error(exc: BaseException) -> bool:
    return classify_exception(exc) in (ErrorCategory.TRANSIENT, ErrorCategory.UNKNOWN)


_CATEGORY_TO_CLASS: dict[ErrorCategory, type[PipelineError]] = {
    ErrorCategory.TRANSIENT: TransientIOError,
    ErrorCategory.PERMANENT: ValidationError,
    ErrorCategory.AUTH: AuthorizationError,
    ErrorCategory.UNKNOWN: PipelineError,
}


def describe_validation_error(exc: pydantic.ValidationError) -> str:
    """Summarise a pydantic error as ``loc: type`` pairs.

    The rendered pydantic message repeats the offending input, which may hold
    raw subject ids, so it must not reach audit entries or dead letters.
    """
    parts = []
    for err in exc.errors(include_url=False, include_context=False, include_input=False):
        loc = ".".join(str(p) for p in err["loc"]) or "<root>"
        parts.append(f"{loc}: {err['type']}")
    return "; ".join(parts)


def wrap_exception(exc: BaseException, context: dict[str, Any] | None = None) -> PipelineError:
    """Wrap a foreign exception in the matching PipelineError subclass."""
    if isinstance(exc, PipelineError):
        return exc
    if isinstance(exc, pydantic.ValidationError):
        return ValidationError(f"Validation failed: {describe_validation_error(exc)}", context=context)
    error_class = _CATEGORY_TO_CLASS[classify_exception(exc)]
    return error_class(str(exc) or type(exc).__name__, cause=exc, context=context)
