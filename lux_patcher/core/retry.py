"""Bounded exponential backoff policy.

The policy only answers "how many attempts" and "how long to wait before
attempt N"; the fetch loop owns the actual sleeping and error handling.
"""

from __future__ import annotations

from dataclasses import dataclass

from lux_patcher.core.config import FetchConfig


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with a fixed attempt budget.

    Attributes:
        max_attempts: Total attempts, including the first
        base_delay: Delay before the second attempt, in seconds
        max_delay: Cap applied to every delay
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("Delays must be non-negative")

    @classmethod
    def from_config(cls, config: FetchConfig) -> RetryPolicy:
        return cls(
            max_attempts=config.max_retries,
            base_delay=config.base_backoff,
            max_delay=config.max_backoff,
        )

    def delay(self, attempt: int) -> float:
        """Delay to wait after a failed attempt.

        Args:
            attempt: 1-based number of the attempt that just failed

        Returns:
            Seconds to sleep before the next attempt
        """
        if attempt < 1:
            raise ValueError("attempt is 1-based")
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def should_retry(self, attempt: int) -> bool:
        """Whether another attempt is allowed after ``attempt`` failed."""
        return attempt < self.max_attempts
