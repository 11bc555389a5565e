"""
Bounded exponential-backoff retries for transient network failures.
"""

import logging
import random
import time
from typing import Callable, TypeVar

from config import RETRY_BASE_DELAY, RETRY_MAX_JITTER, RETRY_MAX_RETRIES

T = TypeVar("T")

RETRIABLE_MARKERS = (
    "econnreset",
    "connection reset",
    "connection aborted",
    "etimedout",
    "timed out",
    "timeout",
    "temporarily unavailable",
    "fetch failed",
    "500",
    "502",
    "503",
    "504",
)


def is_retriable_error(err: BaseException) -> bool:
    """HTTP failures are judged by status code, anything else by its message."""
    status_code = getattr(err, "status_code", None)
    if isinstance(status_code, int):
        return status_code >= 500
    msg = str(err).lower()
    return any(marker in msg for marker in RETRIABLE_MARKERS)


def backoff_delay(attempt: int, base_delay: float = RETRY_BASE_DELAY) -> float:
    """Delay before retry number `attempt` (1-based)."""
    return base_delay * (2 ** (attempt - 1)) + random.uniform(0, RETRY_MAX_JITTER)


def with_retry(
    operation: Callable[[], T],
    max_retries: int = RETRY_MAX_RETRIES,
    base_delay: float = RETRY_BASE_DELAY,
    label: str = "op",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run `operation`, retrying up to `max_retries` more times when it fails
    with a retriable error. Anything else, or the last failure, propagates.
    """
    attempt = 0
    while True:
        try:
            return operation()
        except Exception as e:
            if not is_retriable_error(e) or attempt >= max_retries:
                raise
            attempt += 1
            delay = backoff_delay(attempt, base_delay)
            logging.warning(
                f"🔁 [retry] {label} failed ({e}); retry {attempt}/{max_retries} in {delay * 1000:.0f}ms"
            )
            sleep(delay)
