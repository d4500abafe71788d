"""
Reconnect backoff policy.

Exponential growth from ``initial`` by ``multiplier`` per consecutive failed
round, capped at ``max``, with downward jitter so that many shippers losing
the same collector do not reconnect in lockstep.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field


@dataclass(frozen=True)
class BackoffPolicy:
    initial: float = 0.5
    max: float = 30.0
    jitter: float = 0.25
    multiplier: float = 2.0
    rng: random.Random = field(default_factory=random.Random, compare=False, repr=False)

    def __post_init__(self):
        if self.initial < 0:
            raise ValueError("initial must be >= 0")
        if self.max < self.initial:
            raise ValueError("max must be >= initial")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError("jitter must be between 0 and 1")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1")

    def next_backoff(self, failures: int) -> float:
        """Delay in seconds after the ``failures``-th consecutive failed round (1-based)."""
        n = min(max(1, failures), 64)
        delay = min(self.max, self.initial * (self.multiplier ** (n - 1)))
        if self.jitter:
            delay *= self.rng.uniform(1.0 - self.jitter, 1.0)
        return max(0.0, delay)
