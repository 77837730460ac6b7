"""Reconnect delay schedule."""

from __future__ import annotations

import math
from dataclasses import dataclass, field

INITIAL_DELAY = 1.0
MAX_DELAY = 30.0
BACKOFF_FACTOR = 1.5

# Past this the delay is pinned at the cap anyway; also keeps the power finite.
_MAX_EXPONENT = 64


@dataclass
class Backoff:
    """Exponential backoff with a cap, counted in whole milliseconds.

    The k-th consecutive retry waits ``min(floor(initial * factor**(k-1)),
    maximum)``: 1000, 1500, 2250, 3375, 5062 ms and so on up to 30 s.
    ``reset()`` goes back to the first step after any proof of life.
    """

    initial: float = INITIAL_DELAY
    maximum: float = MAX_DELAY
    factor: float = BACKOFF_FACTOR
    attempt: int = field(default=0, init=False)

    def __post_init__(self) -> None:
        if self.initial <= 0 or self.maximum <= 0:
            raise ValueError("backoff delays must be positive")
        if self.factor < 1:
            raise ValueError("backoff factor must be >= 1")

    def delay_ms(self, attempt: int) -> int:
        """Delay in milliseconds before retry number ``attempt`` (1-based)."""
        exponent = min(max(attempt - 1, 0), _MAX_EXPONENT)
        delay = math.floor(self.initial * 1000 * self.factor**exponent)
        return min(delay, math.floor(self.maximum * 1000))

    def next(self) -> tuple[int, float]:
        """Count one more failed attempt; return ``(attempt, delay_seconds)``."""
        self.attempt += 1
        return self.attempt, self.delay_ms(self.attempt) / 1000

    def reset(self) -> None:
        self.attempt = 0
