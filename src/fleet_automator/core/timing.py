# src/fleet_automator/core/timing.py

"""Timing helpers: jittered intervals, capped backoff, wall-clock slots."""

from __future__ import annotations

import random
from datetime import datetime, timedelta


def randomize_interval(
        base_seconds: float,
        variation_percent: float = 20.0,
        *,
        rng: random.Random | None = None,
) -> float:
    """Return base_seconds +/- variation_percent, never negative."""
    if base_seconds <= 0:
        return 0.0
    r = rng or random
    spread = base_seconds * (variation_percent / 100.0)
    return max(0.0, r.uniform(base_seconds - spread, base_seconds + spread))


def random_range(low: float, high: float, *, rng: random.Random | None = None) -> float:
    r = rng or random
    if high < low:
        low, high = high, low
    return r.uniform(low, high)


def capped_backoff(attempt: int, *, base_seconds: float, cap_seconds: float) -> float:
    """Exponential backoff for the n-th consecutive failure (1-based), capped."""
    if attempt <= 0:
        return 0.0
    # Clamp the exponent so huge failure counts do not overflow.
    delay = base_seconds * (2 ** min(attempt - 1, 30))
    return min(delay, cap_seconds)


def seconds_until_next_slot(now: datetime, hours: tuple[int, ...]) -> float:
    """
    Seconds from `now` until the next wall-clock hour in `hours` (local time).

    E.g. hours=(4, 16) at 10:30 -> 16:00 today; at 17:00 -> 04:00 tomorrow.
    """
    if not hours:
        raise ValueError("hours must not be empty")

    candidates: list[datetime] = []
    for h in sorted(set(hours)):
        if not 0 <= h <= 23:
            raise ValueError(f"invalid hour: {h}")
        slot = now.replace(hour=h, minute=0, second=0, microsecond=0)
        if slot <= now:
            slot += timedelta(days=1)
        candidates.append(slot)

    return (min(candidates) - now).total_seconds()
