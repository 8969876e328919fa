"""Retry utilities with exponential backoff.

Used at two levels: the Gripp client retries a single call on transport
and 5xx failures, and the sync engine retries a whole page fetch.
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    ``max_retries`` counts retries, so a call is attempted at most
    ``max_retries + 1`` times.
    """

    max_retries: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 60.0  # seconds
    exponential_base: float = 2.0
    jitter: bool = False


class RetryExhausted(Exception):
    """All retry attempts exhausted."""

    def __init__(self, attempts: int, last_error: Optional[Exception] = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Retry exhausted after {attempts} attempts")


def calculate_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = False,
) -> float:
    """Delay before retry number ``attempt`` (0-indexed): ``base * 2^attempt``.

    Jitter, when enabled, spreads the delay by +/- 25%.
    """
    delay = min(base_delay * (exponential_base ** attempt), max_delay)

    if jitter:
        spread = delay * 0.25
        delay += random.uniform(-spread, spread)

    return max(0.0, delay)


def retry_with_backoff(
    func: Callable[[], T],
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
    retryable_exceptions: tuple = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Execute ``func``, retrying retryable failures with exponential backoff.

    Errors that carry a ``retry_after`` hint (rate limits) never wait less
    than the hint.

    Raises:
        RetryExhausted: If every attempt failed with a retryable error
        Exception: Any non-retryable error, unchanged
    """
    if config is None:
        config = RetryConfig()

    last_error: Optional[Exception] = None
    attempts = config.max_retries + 1

    for attempt in range(attempts):
        try:
            return func()
        except retryable_exceptions as e:
            last_error = e
            if attempt + 1 >= attempts:
                break

            delay = calculate_delay(
                attempt,
                config.base_delay,
                config.max_delay,
                config.exponential_base,
                config.jitter,
            )
            hint = getattr(e, "retry_after", None)
            if hint:
                delay = max(delay, hint)

            if on_retry:
                on_retry(attempt, e, delay)
            else:
                logger.warning(
                    f"Attempt {attempt + 1}/{attempts} failed: {e}. "
                    f"Retrying in {delay:.1f}s..."
                )
            sleep(delay)

    raise RetryExhausted(attempts, last_error)
