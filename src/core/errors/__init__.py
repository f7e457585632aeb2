"""Error taxonomy for the pipeline."""

from core.errors.exceptions import (
    AuthorizationError,
    ErrorCategory,
    NotFoundError,
    PipelineError,
    ThrottlingError,
    TransientIOError,
    ValidationError,
    classify_exception,
    classify_http_status,
    is_retryable_error,
    is_transient_error,
    wrap_exception,
)

__all__ = [
    "AuthorizationError",
    "ErrorCategory",
    "NotFoundError",
    "PipelineError",
    "ThrottlingError",
    "TransientIOError",
    "ValidationError",
    "classify_exception",
    "classify_http_status",
    "is_retryable_error",
    "is_transient_error",
    "wrap_exception",
]
