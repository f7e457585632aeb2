"""Retry policy: exponential backoff with an attempt budget.

The policy only answers "retry?" and "how long to wait?". Callers own the
loop so they can log and audit each attempt.
"""

import random
from dataclasses import dataclass, field

from core.errors.exceptions import ThrottlingError, classify_exception
from core.types import ErrorCategory

_RETRYABLE = (ErrorCategory.TRANSIENT, ErrorCategory.UNKNOWN)


@dataclass
class RetryConfig:
    """Backoff settings.

    ``get_delay(0)`` is the wait after the first failed attempt:
    base_delay * exponential_base ** attempt, capped at max_delay.
    With jitter enabled the delay is drawn from [delay/2, delay].
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = False
    respect_retry_after: bool = True
    never_retry: set[type[BaseException]] = field(default_factory=set)

    def __post_init__(self) -> None:
        # YAML and env expansion hand us strings
        self.max_attempts = int(self.max_attempts)
        self.base_delay = float(self.base_delay)
        self.max_delay = float(self.max_delay)
        self.exponential_base = float(self.exponential_base)

    def get_delay(self, attempt: int, error: BaseException | None = None) -> float:
        if (
            self.respect_retry_after
            and isinstance(error, ThrottlingError)
            and error.retry_after is not None
        ):
            return min(error.retry_after, self.max_delay)

        delay = min(self.base_delay * (self.exponential_base**attempt), self.max_delay)
        if self.jitter:
            delay = delay / 2 + random.uniform(0, delay / 2)
        return delay

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        """Whether a failure on 0-indexed ``attempt`` gets another try."""
        if attempt + 1 >= self.max_attempts:
            return False
        if any(isinstance(error, exc_type) for exc_type in self.never_retry):
            return False
        return classify_exception(error) in _RETRYABLE
