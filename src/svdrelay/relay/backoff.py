"""Reconnect backoff policy."""

import random
from dataclasses import dataclass


@dataclass
class ReconnectPolicy:
    """Capped exponential backoff with proportional jitter.

    delay(n) = min(initial_delay * multiplier**n, max_delay), spread by
    +/- jitter * delay.
    """

    initial_delay: float = 0.5
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.1

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.initial_delay < 0:
            raise ValueError("initial_delay must be >= 0")
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if not 0 <= self.jitter <= 1:
            raise ValueError("jitter must be between 0 and 1")

    def delay(self, attempt: int) -> float:
        """Seconds to wait before retry number ``attempt`` (0-based)."""
        base = self.initial_delay
        for _ in range(attempt):
            if base <= 0 or base >= self.max_delay:
                break
            base *= self.multiplier
        base = min(base, self.max_delay)
        if self.jitter:
            base += base * self.jitter * random.uniform(-1.0, 1.0)
        return max(base, 0.0)
