"""Throttling retry policy with exponential backoff.

Only upstream throttling (HTTP 429) is retried. The wait before the next
attempt is derived from the upstream hint, falling back to a fixed default:

  delay = min(base * 2^(attempt - 1), ceiling)
  base  = upstream retry-after hint, or default_retry_after when absent

No jitter is applied, and a delay is never shorter than the one before it
even when the upstream hint counts down between attempts.
After max_retries throttled attempts the request fails with THROTTLED and
the last computed delay as its retry-after hint.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from hamsafar.gateway.types import DispatchConfig

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """Backoff calculator for throttled upstream calls.

    Usage:
        policy = RetryPolicy.from_config(config)

        delay = policy.next_delay(attempt=1, retry_after=None)  # 60.0
        if policy.exhausted(attempt):
            # Surface THROTTLED with retry_after=delay
            ...
    """

    max_retries: int = 5
    default_retry_after: float = 60.0
    backoff_ceiling: float = 300.0

    @classmethod
    def from_config(cls, config: DispatchConfig) -> RetryPolicy:
        return cls(
            max_retries=config.max_retries,
            default_retry_after=config.default_retry_after,
            backoff_ceiling=config.backoff_ceiling,
        )

    def next_delay(self, attempt: int, retry_after: float | None = None, previous: float = 0.0) -> float:
        """Backoff for the given 1-based attempt that was just throttled.

        `previous` is the delay used before the last attempt; the result is
        never below it.
        """
        base = retry_after if retry_after is not None and retry_after > 0 else self.default_retry_after
        delay = self.calculate_backoff(attempt, base, self.backoff_ceiling)
        return min(max(delay, previous), self.backoff_ceiling)

    def exhausted(self, attempt: int) -> bool:
        """True once `attempt` throttled calls leave no retries."""
        return attempt >= self.max_retries

    @staticmethod
    def calculate_backoff(attempt: int, base_delay: float, max_delay: float) -> float:
        """Formula: min(base * 2^(attempt-1), max_delay)."""
        exponent = max(0, attempt - 1)
        return min(base_delay * (2**exponent), max_delay)
