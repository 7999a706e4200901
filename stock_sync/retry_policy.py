"""Exponential backoff for failed ERP sync attempts."""

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta


@dataclass(frozen=True)
class RetryPolicy:
    """
    ``delay(n) = min(base * 2^(n-1), max_delay)`` for the n-th consecutive
    failure, optionally spread by +/- ``jitter`` (a fraction of the delay).

    After ``max_consecutive_failures`` failures in a row the entry is
    permanently failed and only an operator retry brings it back.
    """

    base_delay_seconds: float = 30.0
    max_delay_seconds: float = 3600.0
    max_consecutive_failures: int = 5
    jitter: float = 0.0
    rng: random.Random = field(default_factory=random.Random, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.base_delay_seconds <= 0:
            raise ValueError("base_delay_seconds must be positive")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        if self.max_consecutive_failures < 1:
            raise ValueError("max_consecutive_failures must be >= 1")
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be in [0, 1)")

    def delay(self, consecutive_failures: int) -> float:
        if consecutive_failures < 1:
            return 0.0
        # Cap the exponent; 2**n overflows float long before it matters
        exponent = min(consecutive_failures - 1, 62)
        delay = min(self.base_delay_seconds * (2**exponent), self.max_delay_seconds)
        if self.jitter:
            delay *= 1 + self.rng.uniform(-self.jitter, self.jitter)
            delay = min(delay, self.max_delay_seconds)
        return delay

    def next_retry_at(self, now: datetime, consecutive_failures: int) -> datetime:
        return now + timedelta(seconds=self.delay(consecutive_failures))

    def exhausted(self, consecutive_failures: int) -> bool:
        return consecutive_failures >= self.max_consecutive_failures
