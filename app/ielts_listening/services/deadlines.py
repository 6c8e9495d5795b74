"""Per-stage time budgets for calls to external generation services."""
from __future__ import annotations

import time
from typing import Callable, Optional


class DeadlineExceeded(TimeoutError):
    """Raised when a stage runs out of its time budget."""


class Deadline:
    """A point in (monotonic) time after which a stage must stop waiting."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.seconds = seconds
        self._expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    def cap(self, timeout: float) -> float:
        """Shrink a per-request timeout so it never outlives the deadline."""
        return min(timeout, self.remaining())

    def check(self, what: str) -> None:
        if self.expired:
            raise DeadlineExceeded(f"{what} exceeded its {self.seconds:.0f}s budget")

    def __repr__(self):
        return f'<Deadline remaining={self.remaining():.1f}s>'


def earliest(*deadlines: Optional[Deadline]) -> Optional[Deadline]:
    """Return whichever of the given deadlines expires first."""
    live = [d for d in deadlines if d is not None]
    if not live:
        return None
    return min(live, key=lambda d: d.remaining())
