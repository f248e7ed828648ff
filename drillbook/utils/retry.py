from __future__ import annotations

import random
from datetime import datetime, timedelta


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


def next_attempt_at(
    now: datetime, attempt: int, base: float = 1.5, jitter: float = 0.5
) -> datetime:
    """Return when the next attempt becomes due.

    The engine never sleeps; it records this timestamp and lets the
    scheduler pick the run up again.
    """
    return now + timedelta(seconds=compute_backoff(attempt, base, jitter))
