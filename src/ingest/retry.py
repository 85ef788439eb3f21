"""Exponential backoff with jitter for store retries."""
import random
from dataclasses import dataclass


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Attempt ceiling and delay schedule.

    Delay before retry n (1-based) is drawn uniformly from
    [0, min(max_delay, initial_delay * multiplier ** (n - 1))] ("full jitter"),
    so a burst of failing uploads doesn't retry in lockstep.
    """
    max_attempts: int = 5
    initial_delay: float = 0.1
    max_delay: float = 5.0
    multiplier: float = 2.0
    jitter: bool = True

    def ceiling(self, retry_number: int) -> float:
        """Upper bound on the delay before the given retry."""
        return min(self.max_delay, self.initial_delay * self.multiplier ** (retry_number - 1))

    def delay(self, retry_number: int) -> float:
        cap = self.ceiling(retry_number)
        if not self.jitter:
            return cap
        return random.uniform(0, cap)
