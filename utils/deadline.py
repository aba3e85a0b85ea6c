"""
Wall-clock budget for a single trigger invocation.
"""

import time
from typing import Callable


class Deadline:
    """Monotonic time budget, consulted before each unit of work."""

    def __init__(self, budget_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.budget_seconds = budget_seconds
        self._clock = clock
        self._started = clock()

    @property
    def elapsed(self) -> float:
        return self._clock() - self._started

    @property
    def elapsed_ms(self) -> int:
        return int(self.elapsed * 1000)

    @property
    def remaining(self) -> float:
        return max(0.0, self.budget_seconds - self.elapsed)

    def expired(self) -> bool:
        return self.elapsed > self.budget_seconds

    def __repr__(self):
        return f"<Deadline {self.elapsed:.2f}s/{self.budget_seconds:.2f}s>"
