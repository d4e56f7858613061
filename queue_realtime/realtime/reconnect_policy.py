"""
Reconnection policy with bounded attempts and exponential backoff.

The policy only computes delays and decides whether another attempt is
allowed; the connection manager owns the retry loop.
"""

import random
from dataclasses import dataclass

from ..config.models import ConnectionConfig


@dataclass(frozen=True)
class ReconnectPolicy:
    """
    Configuration for reconnection behavior.

    Delay for attempt n (0-indexed) is min(base_delay * 2**n, max_delay),
    randomised by +/- jitter so many clients do not reconnect in lockstep.
    """

    max_attempts: int = 5
    base_delay: float = 1.0  # seconds
    max_delay: float = 5.0  # seconds
    jitter: float = 0.25  # fraction of the delay
    exponential_base: float = 2.0

    @classmethod
    def from_config(cls, config: ConnectionConfig) -> "ReconnectPolicy":
        """Build a policy from the connection configuration."""
        return cls(
            max_attempts=config.reconnection_attempts,
            base_delay=config.reconnection_delay,
            max_delay=config.reconnection_delay_max,
            jitter=config.reconnection_jitter,
        )

    def should_retry(self, retries_used: int) -> bool:
        """Whether another automatic attempt is allowed after `retries_used` retries."""
        return retries_used < self.max_attempts

    def calculate_delay(self, attempt: int) -> float:
        """
        Calculate the delay before a given attempt.

        Args:
            attempt: Attempt number (0-indexed)

        Returns:
            Delay in seconds, never above max_delay
        """
        delay = min(self.base_delay * (self.exponential_base**attempt), self.max_delay)
        if self.jitter:
            spread = delay * self.jitter
            delay = delay + random.uniform(-spread, spread)
        return max(0.0, min(delay, self.max_delay))
