# agent/backoff.py
from __future__ import annotations

import random


class ExponentialBackoff:
    """
    Poll delay for an idle or failing worker.

    Each call to next() doubles the ceiling (initial * 2^n, capped at
    maximum) and draws the delay uniformly from
    [max(previous delay, ceiling / 2), ceiling], so delays never go down
    between resets and never exceed maximum.
    """

    def __init__(self, initial: float = 1.0, maximum: float = 30.0, rng: random.Random | None = None):
        if initial <= 0:
            raise ValueError("initial delay must be positive")
        if maximum < initial:
            raise ValueError("maximum delay must be >= initial delay")
        self.initial = float(initial)
        self.maximum = float(maximum)
        self._rng = rng or random.Random()
        self.reset()

    def reset(self) -> None:
        self._ceiling = self.initial
        self._last = 0.0

    def next(self) -> float:
        # Stop doubling once capped; keeps the float from overflowing.
        if self._ceiling < self.maximum:
            self._ceiling = min(self._ceiling * 2, self.maximum)
        low = max(self._last, self._ceiling / 2)
        delay = self._rng.uniform(low, self._ceiling)
        self._last = min(delay, self._ceiling)
        return self._last

    @property
    def ceiling(self) -> float:
        return self._ceiling
