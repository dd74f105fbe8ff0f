from __future__ import annotations

import random
from datetime import datetime, timedelta


def next_poll_interval(
    auction_end_time: datetime | None,
    now: datetime,
    default_interval: timedelta,
    urgent_interval: timedelta,
    urgent_threshold: timedelta,
) -> timedelta:
    """Interval until the next regular poll.

    Auctions inside ``urgent_threshold`` of their end are polled every
    ``urgent_interval``. An auction approaching that window is polled no later
    than the moment the window opens.
    """
    if auction_end_time is None:
        return default_interval

    remaining = auction_end_time - now
    if remaining <= timedelta(0):
        return default_interval
    if remaining <= urgent_threshold:
        return min(urgent_interval, default_interval)

    until_window = remaining - urgent_threshold
    return max(min(default_interval, until_window), urgent_interval)


def backoff_delay(
    consecutive_failures: int,
    base: timedelta,
    cap: timedelta,
    jitter: float = 0.2,
    rng: random.Random | None = None,
) -> timedelta:
    """``base * 2**consecutive_failures`` scaled by ±``jitter``, never above ``cap``."""
    rng = rng or random.Random()
    exponent = min(consecutive_failures, 20)
    raw = base * (2**exponent)
    if raw > cap:
        raw = cap
    factor = 1.0 + rng.uniform(-jitter, jitter) if jitter else 1.0
    return min(raw * factor, cap)
