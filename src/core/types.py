"""Shared enums used across core modules."""

from enum import Enum


class ErrorCategory(str, Enum):
    """Classification of errors for retry and dead-letter routing."""

    TRANSIENT = "transient"  # Timeouts, throttling, unavailability: retry
    AUTH = "auth"  # Authorization failure: never retried
    PERMANENT = "permanent"  # Malformed input, schema violation: dead-letter
    UNKNOWN = "unknown"  # Unclassified: retried within the normal budget
