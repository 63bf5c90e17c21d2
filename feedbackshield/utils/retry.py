"""
Bounded retry with exponential back-off.

Only errors the predicate marks as transient are retried; anything else is
re-raised immediately.
"""

import logging
import time
from typing import Any, Callable, Optional, Tuple

from feedbackshield.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

BASE_DELAY: float = 0.5
MAX_DELAY: float = 8.0
BACKOFF_FACTOR: float = 2.0


def is_transient(exc: Exception) -> bool:
    return isinstance(exc, UpstreamUnavailable) and exc.transient


def call_with_retry(
    fn: Callable[[], Any],
    max_retries: int,
    base_delay: float = BASE_DELAY,
    max_delay: float = MAX_DELAY,
    retryable: Callable[[Exception], bool] = is_transient,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "call",
) -> Tuple[Any, int]:
    """
    Call ``fn()`` up to ``max_retries + 1`` times.

    Returns:
        (result, attempts)

    Raises:
        The last exception once retries are exhausted or it is not retryable.
    """
    last_exc: Optional[Exception] = None
    delay = base_delay

    for attempt in range(max_retries + 1):
        try:
            return fn(), attempt + 1
        except Exception as exc:
            last_exc = exc

            if not retryable(exc):
                logger.warning("%s failed with non-retryable error: %s", label, exc)
                raise

            if attempt < max_retries:
                logger.warning(
                    "%s failed (attempt %d/%d): %s, retrying in %.1fs",
                    label, attempt + 1, max_retries + 1, exc, delay,
                )
                sleep(delay)
                delay = min(delay * BACKOFF_FACTOR, max_delay)
            else:
                logger.error("%s failed after %d attempts: %s", label, max_retries + 1, exc)

    raise last_exc
