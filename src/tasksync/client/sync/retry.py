"""Retry policy for changes the server rejected.

A rejected change stays in the queue and is offered again after an
exponential backoff. After ``max_attempts`` rejections it is parked as
failed: kept for inspection, never sent again automatically.

Network failures are not rejections. They do not count as attempts; the
whole cycle is simply retried on the next trigger.
"""

from __future__ import annotations

from dataclasses import dataclass

# Default retry configuration
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_INITIAL_BACKOFF = 1.0  # seconds
DEFAULT_MAX_BACKOFF = 300.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with an attempt ceiling.

    Attributes:
        max_attempts: Rejections after which a change is parked as failed.
        initial_backoff: Delay after the first rejection, in seconds.
        max_backoff: Upper bound for the delay, in seconds.
        multiplier: Growth factor between consecutive delays.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF
    max_backoff: float = DEFAULT_MAX_BACKOFF
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER

    def backoff(self, attempts: int) -> float:
        """Delay before the next offer of a change rejected ``attempts`` times."""
        if attempts <= 0:
            return 0.0
        delay = self.initial_backoff * self.multiplier ** (attempts - 1)
        return min(delay, self.max_backoff)

    def exhausted(self, attempts: int) -> bool:
        """Check whether a change rejected ``attempts`` times should be parked."""
        return attempts >= self.max_attempts
