"""
Retry Executor.

Bounded exponential backoff with jitter for calls to flaky external
dependencies (extraction service, notification webhook).
"""

from .executor import RetryOptions, execute, is_retryable_error

__all__ = [
    "RetryOptions",
    "execute",
    "is_retryable_error",
]
