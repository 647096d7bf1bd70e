"""Retry backoff policy shared by the job record and the queue transport."""

from dataclasses import dataclass
from enum import Enum


class BackoffType(str, Enum):
    """Delay-growth policy between retry attempts."""

    FIXED = "fixed"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class BackoffPolicy:
    """Backoff configuration attached to a queue entry.

    Attributes:
        type: fixed or exponential growth
        delay_ms: base delay in milliseconds
    """

    type: BackoffType = BackoffType.EXPONENTIAL
    delay_ms: int = 30000

    def delay_for(self, attempts: int) -> int:
        """Delay before the next run after ``attempts`` failed runs."""
        return backoff_delay_ms(attempts, self.delay_ms, self.type)


def backoff_delay_ms(
    attempts: int,
    base_delay_ms: int,
    backoff_type: BackoffType = BackoffType.EXPONENTIAL,
) -> int:
    """Compute the retry delay for a number of attempts already made.

    Exponential backoff is ``base * 2^attempts``, so with a 30s base the delays
    after attempts 1, 2 and 3 are 60s, 120s and 240s.

    Args:
        attempts: Number of attempts made so far (>= 0)
        base_delay_ms: Base delay in milliseconds

    Returns:
        Delay in milliseconds (never negative)
    """
    attempts = max(attempts, 0)
    base_delay_ms = max(base_delay_ms, 0)
    if BackoffType(backoff_type) == BackoffType.FIXED:
        return base_delay_ms
    return base_delay_ms * (2**attempts)
