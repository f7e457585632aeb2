from core.resilience.retry import RetryConfig

__all__ = ["RetryConfig"]
