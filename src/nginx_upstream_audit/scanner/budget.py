"""Per-target wall-clock budget shared by all probe steps of one target."""

from __future__ import annotations

import time


class ProbeBudget:
    """Hands out step timeouts that never exceed what is left of the budget."""

    MIN_STEP = 1.0

    def __init__(self, total: float, clock=time.monotonic) -> None:
        self._clock = clock
        self._deadline = clock() + total

    def remaining(self) -> float:
        return max(0.0, self._deadline - self._clock())

    def step(self, wanted: float) -> float | None:
        """Timeout for the next step, or None when the budget is spent."""
        left = self.remaining()
        if left < self.MIN_STEP:
            return None
        return min(float(wanted), left)
