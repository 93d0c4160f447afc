"""Exponential backoff policy shared by both transports."""

from __future__ import annotations

import random
from collections.abc import Iterator
from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff.

    delay_for(0) is the wait before the second attempt, delay_for(1) before
    the third, and so on. Without jitter the delays strictly increase
    (multiplier > 1) until max_delay caps them.
    """

    initial_delay: float = 0.3
    multiplier: float = 2.0
    max_delay: float | None = None
    max_attempts: int = 5
    jitter: tuple[float, float] | None = None  # Additive, uniform (low, high)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay < 0:
            raise ValueError("initial_delay must not be negative")

    def delay_for(self, retry_index: int) -> float:
        delay = self.initial_delay * (self.multiplier**retry_index)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        if self.jitter:
            low, high = self.jitter
            delay += random.uniform(low, high)
        return delay

    def delays(self) -> Iterator[float]:
        """Yield the waits between consecutive attempts (max_attempts - 1 values)."""
        for index in range(self.max_attempts - 1):
            yield self.delay_for(index)
