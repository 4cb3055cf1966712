"""
Backoff policy for recompute job retries.

Delay after the n-th failed attempt is ``base_delay * exponential_base**(n-1)``,
capped at ``max_delay`` and spread by +/- ``jitter_ratio`` so that jobs failing
together do not retry in lockstep.
"""

import random
from dataclasses import dataclass


def calculate_retry_delay(
    failed_attempts: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter_ratio: float = 0.1,
) -> float:
    """Seconds to wait after ``failed_attempts`` (>= 1) consecutive failures."""
    delay = min(base_delay * exponential_base ** max(failed_attempts - 1, 0), max_delay)
    if jitter_ratio:
        spread = delay * jitter_ratio
        delay += random.uniform(-spread, spread)
    return max(0.0, delay)


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter_ratio: float = 0.1

    def get_delay(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        return calculate_retry_delay(
            attempt,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            exponential_base=self.exponential_base,
            jitter_ratio=self.jitter_ratio,
        )

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts
