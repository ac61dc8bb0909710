"""Exponential backoff with jitter."""

from __future__ import annotations

import random


def backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter: float = 0.2,
) -> float:
    """Delay before retry number ``attempt`` (1-based).

    base_delay * 2**(attempt - 1), capped at max_delay, plus up to
    ``jitter`` of that value at random to spread out retry storms.
    """
    delay = min(base_delay * (2 ** (max(attempt, 1) - 1)), max_delay)
    return delay + delay * jitter * random.random()
