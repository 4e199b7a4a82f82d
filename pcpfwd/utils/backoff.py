"""Backoff utilities for retry policies."""

from __future__ import annotations

import random
from dataclasses import dataclass


@dataclass
class ExponentialBackoff:
    """Exponential backoff with optional jitter and an optional deadline cap."""

    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 60.0
    jitter: float = 0.1

    def next_delay(self, retries: int, limit: float | None = None) -> float:
        """Calculate the delay before retry number ``retries`` (0-based).

        Args:
            retries: Number of retries already made
            limit: Upper bound for the result, e.g. the time left before a
                deadline

        """
        delay = self.base_delay * (self.multiplier ** max(0, retries))
        delay = min(delay, self.max_delay)
        if self.jitter > 0:
            jitter_amt = delay * self.jitter
            delay = max(0.0, delay - jitter_amt) + random.random() * (2 * jitter_amt)  # noqa: S311  # nosec B311
        if limit is not None:
            delay = min(delay, max(0.0, limit))
        return delay
