"""Backoff policy for retrying transient execution failures."""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Callable

from graphrollup.core.config import Settings


@dataclass
class RetryPolicy:
    """Configuration for automatic retry behavior"""

    max_attempts: int = 3
    base_delay_ms: int = 1000
    backoff_multiplier: float = 2.0
    max_delay_ms: int = 30000
    jitter_factor: float = 0.1
    random_fn: Callable[[], float] = field(default=random.random, repr=False)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay_ms=settings.retry_base_delay_ms,
            backoff_multiplier=settings.retry_backoff_multiplier,
            max_delay_ms=settings.retry_max_delay_ms,
            jitter_factor=settings.retry_jitter_factor,
        )

    def should_retry(self, attempt: int) -> bool:
        """Whether another attempt may follow the given (1-based) attempt."""
        return attempt < self.max_attempts

    def calculate_delay_ms(self, attempt: int) -> int:
        """Delay before the attempt following ``attempt`` (1-based)."""
        delay = self.base_delay_ms * (self.backoff_multiplier ** max(0, attempt - 1))
        delay = min(delay, self.max_delay_ms)
        if self.jitter_factor:
            # Spread retries by +/- jitter_factor of the delay
            delay += delay * self.jitter_factor * (2 * self.random_fn() - 1)
        return int(max(0, min(delay, self.max_delay_ms)))
