"""Retry backoff schedule for failed deliveries."""

from datetime import timedelta
from typing import Optional, Sequence

# Indexed by attempt number (1-based); the last delay repeats.
DEFAULT_RETRY_DELAYS: tuple[timedelta, ...] = (
    timedelta(seconds=10),
    timedelta(seconds=60),
    timedelta(seconds=300),
)


def next_delay(
    attempt: int,
    max_retries: int,
    schedule: Optional[Sequence[timedelta]] = None,
) -> Optional[timedelta]:
    """Delay before the next attempt, or None when the delivery must be dead-lettered.

    ``attempt`` is the number of attempts made so far. Retrying stops once
    ``attempt >= max_retries``, so ``max_retries`` of 0 or 1 never retries.
    """
    if attempt >= max_retries:
        return None
    delays = tuple(schedule) if schedule else DEFAULT_RETRY_DELAYS
    index = max(attempt, 1) - 1
    if index >= len(delays):
        return delays[-1]
    return delays[index]
