"""
RetryPolicy -- bounded, capped exponential backoff for posting attempts.

    delay(attempts) = min(base * 2 ** (attempts - 1), cap)

With the defaults (base 10s, cap 30 min, 6 attempts) the waits after each
failed attempt are 10s, 20s, 40s, 80s, 160s, and the sixth failure
dead-letters the claim.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 6
    base_delay_seconds: float = 10.0
    max_delay_seconds: float = 1800.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_seconds <= 0 or self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("backoff requires 0 < base_delay_seconds <= max_delay_seconds")

    def delay_for(self, attempts: int) -> timedelta:
        """Delay before the next attempt after ``attempts`` failed attempts."""
        exponent = max(attempts, 1) - 1
        # Avoid huge powers; anything past the cap is the cap.
        if exponent >= 63:
            return timedelta(seconds=self.max_delay_seconds)
        seconds = min(self.base_delay_seconds * (2 ** exponent), self.max_delay_seconds)
        return timedelta(seconds=seconds)

    def next_retry_at(self, now: datetime, attempts: int) -> datetime:
        return now + self.delay_for(attempts)

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts
