"""
Equal-jitter exponential backoff for idle claim polling.

Each call sleeps half the current delay plus a random share of the other half,
then grows the delay by the multiplier up to the cap. Only used to pace job
claiming when the queue is empty; the RPC batch fetcher uses a fixed delay.
"""

from __future__ import annotations

import random
import time
from typing import Callable


class Backoff:
    """Jittered exponential delay generator. One instance per worker."""

    def __init__(
        self,
        min_ms: int,
        max_ms: int,
        multiplier: float = 2.0,
        *,
        sleep: Callable[[float], object] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        if min_ms < 1 or max_ms < min_ms:
            raise ValueError("backoff bounds must satisfy 1 <= min_ms <= max_ms")
        if multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")
        self.min_ms = min_ms
        self.max_ms = max_ms
        self.multiplier = multiplier
        self.current_ms = min_ms
        self._sleep = sleep
        self._rng = rng or random.Random()

    def reset(self) -> None:
        self.current_ms = self.min_ms

    def step(self) -> int:
        """Return the next sleep duration in milliseconds and grow the delay. Does not sleep."""
        half = self.current_ms // 2
        jitter = self._rng.randrange(half) if half > 0 else 0
        sleep_ms = max(1, half + jitter)
        grown = max(self.min_ms, round(self.current_ms * self.multiplier))
        self.current_ms = min(self.max_ms, grown)
        return sleep_ms

    def next_delay(self) -> float:
        """Sleep for the next delay; return the seconds slept."""
        seconds = self.step() / 1000.0
        self._sleep(seconds)
        return seconds
