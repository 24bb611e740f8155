"""Named retry policies and backoff delay computation.

WHAT:
    Frozen policy objects for the retry disciplines in the engine: OAuth
    token extension, provider requests, and single-use code exchanges.

WHY:
    Retry constants must stay identical across adapters and flows, so they
    live in one place instead of inline literals.

REFERENCES:
    - adsync/services/providers/base.py (_send)
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Callable, Optional


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff settings.

    max_attempts counts the first try, so max_attempts=3 means two retries.
    """

    max_attempts: int
    base_delay: float
    multiplier: float = 2.0
    max_delay: Optional[float] = None
    jitter: float = 0.0
    # True: only 429/5xx responses are retried, not transport errors or
    # provider throttle codes carried by other statuses
    http_status_only: bool = False

    @property
    def max_retries(self) -> int:
        return self.max_attempts - 1

    def allows_retry(self, status_code: Optional[int]) -> bool:
        """Whether a transient failure with this status may be retried at all."""
        if self.max_retries <= 0:
            return False
        if self.http_status_only:
            return status_code is not None and is_retryable_status(status_code)
        return True

    def delay_for(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        """Seconds to wait before retry number `attempt` (0-based)."""
        delay = self.base_delay * (self.multiplier ** attempt)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        if self.jitter:
            # rng() in [0, 1) maps to a factor in [1 - jitter, 1 + jitter)
            delay *= 1 + self.jitter * (2 * rng() - 1)
        return max(delay, 0.0)

    def bounds_for(self, attempt: int) -> tuple[float, float]:
        """Lowest and highest delay `delay_for` can return for this attempt."""
        delay = self.base_delay * (self.multiplier ** attempt)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay * (1 - self.jitter), delay * (1 + self.jitter)


# OAuth long-lived token extension: 500ms base, 5s cap, +/-20% jitter, 3 attempts
OAUTH_RETRY_POLICY = RetryPolicy(max_attempts=3, base_delay=0.5, max_delay=5.0, jitter=0.2, http_status_only=True)

# Authorization codes are single-use; a resent code is always rejected
NO_RETRY_POLICY = RetryPolicy(max_attempts=1, base_delay=0.0)

# Provider fetches: 200ms x 2^attempt, 2 extra attempts, no jitter
PROVIDER_RETRY_POLICY = RetryPolicy(max_attempts=3, base_delay=0.2)


def is_retryable_status(status_code: int) -> bool:
    """429 and 5xx are transient; everything else is final."""
    return status_code == 429 or 500 <= status_code < 600
