"""
Retry executor with exponential backoff and jitter.

Semantics:
- attempt 0 is the first call; up to max_retries further calls follow
- delay before retry n is min(base_delay * 2**n, max_delay) +/- 25% jitter
- non-retryable errors and the final failure are re-raised untouched
"""

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

import httpx
import requests
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt

from ..config import RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_FRACTION = 0.25

# Lowercase message fragments that mark an error as transient
TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "rate limit",
    "network",
    "connection reset",
    "connection refused",
    "temporarily unavailable",
)


def is_retryable_error(error: BaseException) -> bool:
    """
    Default retry predicate.

    Retryable: network failures, HTTP 429 and 5xx, and anything whose
    message says it timed out or hit a rate limit. Everything else is
    treated as fatal. Errors carrying a boolean `retryable` attribute
    decide for themselves.
    """
    retryable = getattr(error, "retryable", None)
    if isinstance(retryable, bool):
        return retryable

    if isinstance(error, (httpx.TransportError, requests.ConnectionError, requests.Timeout)):
        return True
    if isinstance(error, (TimeoutError, ConnectionError)):
        return True

    status_code = getattr(error, "status_code", None)
    if status_code is None:
        response = getattr(error, "response", None)
        status_code = getattr(response, "status_code", None)
    if isinstance(status_code, int) and (status_code == 429 or status_code >= 500):
        return True

    message = str(error).lower()
    return any(marker in message for marker in TRANSIENT_MARKERS)


@dataclass
class RetryOptions:
    """Options for a single execute() call."""

    max_retries: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    is_retryable: Callable[[BaseException], bool] = field(default=is_retryable_error)

    @classmethod
    def from_config(cls, config: RetryConfig, max_retries: int | None = None) -> "RetryOptions":
        """Build options from the retry config section."""
        return cls(
            max_retries=config.max_retries if max_retries is None else max_retries,
            base_delay=config.base_delay_seconds,
            max_delay=config.max_delay_seconds,
        )

    def compute_delay(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        """Backoff delay in seconds before retrying after `attempt` failed."""
        delay = min(self.base_delay * (2**attempt), self.max_delay)
        jitter = delay * JITTER_FRACTION * (rng() * 2 - 1)
        return max(0.0, delay + jitter)


def execute(
    operation: Callable[[], T],
    options: RetryOptions | None = None,
    sleep: Callable[[float], None] = time.sleep,
    rng: Callable[[], float] = random.random,
) -> T:
    """
    Run `operation`, retrying transient failures.

    Args:
        operation: Zero-argument callable to run
        options: Retry policy (defaults to RetryOptions())
        sleep: Sleep function (injectable for tests)
        rng: Uniform [0, 1) source for jitter

    Returns:
        The operation's result

    Raises:
        The last error raised by `operation`, unwrapped
    """
    opts = options or RetryOptions()
    total_attempts = opts.max_retries + 1

    def backoff(retry_state: RetryCallState) -> float:
        return opts.compute_delay(retry_state.attempt_number - 1, rng)

    def log_retry(retry_state: RetryCallState) -> None:
        logger.warning(
            "Attempt %d/%d failed (%s), retrying in %.2fs",
            retry_state.attempt_number,
            total_attempts,
            retry_state.outcome.exception(),
            retry_state.next_action.sleep,
        )

    retrying = Retrying(
        stop=stop_after_attempt(total_attempts),
        wait=backoff,
        retry=retry_if_exception(opts.is_retryable),
        before_sleep=log_retry,
        sleep=sleep,
        reraise=True,
    )
    return retrying(operation)
