from __future__ import annotations

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class Backoff:
    """Capped exponential backoff with multiplicative jitter."""

    initial_delay: float = 0.5
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: bool = True

    def compute_delay(self, attempt: int) -> float:
        """Delay in seconds before retry number `attempt` (0-based)."""
        base = self.initial_delay * (self.multiplier ** max(attempt, 0))
        capped = min(base, self.max_delay)
        if self.jitter:
            return capped * (0.5 + random.random() * 0.5)
        return capped
