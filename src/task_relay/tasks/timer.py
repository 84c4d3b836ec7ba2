"""Deadline awareness for one invocation's execution window."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field


@dataclass(slots=True)
class InvocationTimer:
    """Remaining-budget view of the host runtime's time ceiling.

    Created once per invocation and handed to the work function; the clock is
    injectable so tests can drive it deterministically.
    """

    budget_seconds: float
    margin_seconds: float = 60.0
    clock: Callable[[], float] = time.monotonic
    started_at: float = field(init=False)

    def __post_init__(self) -> None:
        if self.budget_seconds <= 0:
            raise ValueError("budget_seconds must be > 0")
        if self.margin_seconds < 0:
            raise ValueError("margin_seconds must be >= 0")
        self.started_at = self.clock()

    def elapsed_seconds(self) -> float:
        return max(0.0, self.clock() - self.started_at)

    def remaining_seconds(self) -> float:
        return max(0.0, self.budget_seconds - self.elapsed_seconds())

    def is_close_to_timeout(self) -> bool:
        return self.remaining_seconds() <= self.margin_seconds
