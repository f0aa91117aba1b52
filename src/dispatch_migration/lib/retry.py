"""
Retry with exponential backoff for transient database errors.
"""

import logging
import time
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0


def backoff_delays(max_attempts: int = DEFAULT_MAX_ATTEMPTS, base_delay: float = DEFAULT_BASE_DELAY) -> list:
    """Delays slept between attempts: 1s, 2s, 4s, ... for the default base"""
    return [base_delay * (2 ** attempt) for attempt in range(max_attempts)]


def retry_with_backoff(
    operation: Callable[[], T],
    is_retryable: Callable[[BaseException], bool],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY,
    description: str = "operation",
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    """
    Run ``operation`` and retry it while ``is_retryable`` accepts the error

    The operation is attempted once plus up to ``max_attempts`` retries,
    sleeping ``base_delay * 2**n`` before retry n. Non-retryable errors and
    the last retryable error are re-raised unchanged.

    Args:
        operation: Zero-argument callable to run
        is_retryable: Predicate deciding whether an exception is transient
        max_attempts: Number of retries after the first failure
        base_delay: Delay before the first retry in seconds
        description: Label used in log messages
        sleep: Sleep function (injectable for tests)

    Returns:
        The operation's return value
    """
    sleep = sleep or time.sleep
    delays = backoff_delays(max_attempts, base_delay)

    attempt = 0
    while True:
        try:
            return operation()
        except Exception as e:
            if not is_retryable(e) or attempt >= len(delays):
                raise
            delay = delays[attempt]
            attempt += 1
            logger.warning(
                f"{description} failed ({e.__class__.__name__}: {e}); "
                f"retry {attempt}/{max_attempts} in {delay:.1f}s"
            )
            sleep(delay)
