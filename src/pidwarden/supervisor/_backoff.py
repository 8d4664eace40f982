"""Exponential backoff calculator for service restarts.

Delays grow with the number of consecutive failures and are capped. Jitter
is available for fleets where many services may restart at once, but is off
by default so that delays stay monotonic.
"""

import random
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class ExponentialBackoff:
    """Exponential backoff calculator with a cap and optional jitter.

    The delay formula is:
        delay = min(base * (multiplier ^ (failures - 1)), max_delay)
        delay = delay * (1 - jitter/2 + random() * jitter)

    Attributes:
        base: Delay in seconds after the first failure.
        max_delay: Maximum delay in seconds.
        multiplier: Factor to multiply delay for each further failure.
        jitter: Fraction of delay to randomize (0.0-1.0).
    """

    base: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: float = 0.0

    def delay(self, consecutive_failures: int) -> float:
        """Calculate the delay before the next launch.

        Args:
            consecutive_failures: Failures counted so far (1 for the first
                restart). Values below 1 are treated as 1.

        Returns:
            The delay in seconds before the next launch attempt.
        """
        exponent = max(consecutive_failures, 1) - 1

        # Avoid float overflow for very long failure streaks
        try:
            exponential_delay = self.base * (self.multiplier**exponent)
        except OverflowError:
            exponential_delay = self.max_delay

        capped_delay = min(exponential_delay, self.max_delay)

        if self.jitter > 0:
            jitter_range = capped_delay * self.jitter
            jitter_offset = random.uniform(-jitter_range / 2, jitter_range / 2)  # noqa: S311
            capped_delay = min(max(0.0, capped_delay + jitter_offset), self.max_delay)

        return capped_delay
