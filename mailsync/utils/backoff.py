"""
Shared exponential backoff.

Both the provider request layer (seconds-scale waits between HTTP retries) and
the webhook queue (minute-scale ``next_retry_at`` scheduling) compute their
delays here so the two policies cannot drift apart.
"""

import time
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple, Type, TypeVar

from mailsync.utils.datetime_utils import utc_now, seconds_until
from mailsync.utils.logging import get_logger

logger = get_logger("backoff")

T = TypeVar("T")


def backoff_delay(attempt: int, base: float = 2.0, unit_seconds: float = 1.0,
                  max_delay: Optional[float] = None) -> float:
    """
    Delay before the next try, ``base ** attempt * unit_seconds``.

    Args:
        attempt: 1-based number of the attempt that just failed
        base: Exponent base
        unit_seconds: Scale of one step (1 for HTTP retries, 60 for queued work)
        max_delay: Optional ceiling

    Returns:
        Delay in seconds
    """
    delay = (base ** max(attempt, 0)) * unit_seconds
    if max_delay is not None:
        delay = min(delay, max_delay)
    return delay


def next_retry_at(retry_count: int, unit_seconds: float = 60.0, base: float = 2.0,
                  now: Optional[datetime] = None) -> datetime:
    """Absolute re-eligibility time for queued work that has failed retry_count times."""
    now = now or utc_now()
    return now + timedelta(seconds=backoff_delay(retry_count, base=base, unit_seconds=unit_seconds))


def retry_with_backoff(
    func: Callable[[], T],
    max_attempts: int = 3,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    base: float = 2.0,
    deadline: Optional[datetime] = None,
    sleep: Callable[[float], None] = time.sleep,
    description: str = "operation",
) -> T:
    """
    Call func until it succeeds or max_attempts is reached.

    Only exceptions in retry_on are retried; anything else propagates at once.
    A wait that would overrun the deadline is not taken and the last error is
    raised instead.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return func()
        except retry_on as e:
            if attempt >= max_attempts:
                logger.warning(f"{description} failed after {attempt} attempts: {e}")
                raise
            delay = backoff_delay(attempt, base=base)
            remaining = seconds_until(deadline)
            if remaining is not None and remaining <= delay:
                logger.warning(f"{description} failed and deadline leaves no room for retry: {e}")
                raise
            logger.info(f"{description} attempt {attempt} failed ({e}); retrying in {delay:.1f}s")
            sleep(delay)
