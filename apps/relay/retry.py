"""Bounded reconnect policy, kept as plain data so it can be tested without timers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from config import SonioxConfig


@dataclass(frozen=True)
class ReconnectPolicy:
    max_attempts: int = 3
    base_delay_sec: float = 1.0
    backoff: float = 2.0
    max_delay_sec: float = 8.0

    @classmethod
    def from_config(cls, config: SonioxConfig) -> "ReconnectPolicy":
        return cls(
            max_attempts=config.max_reconnect_attempts,
            base_delay_sec=config.reconnect_delay_sec,
            backoff=config.reconnect_backoff,
            max_delay_sec=config.max_reconnect_delay_sec,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay before the 1-based *attempt*."""
        delay = self.base_delay_sec * (self.backoff ** max(attempt - 1, 0))
        return min(delay, self.max_delay_sec)


@dataclass
class ReconnectBudget:
    """Counts consecutive reconnect attempts against a policy."""
    policy: ReconnectPolicy = field(default_factory=ReconnectPolicy)
    attempts: int = 0

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.policy.max_attempts

    def next_delay(self) -> Optional[float]:
        """Claim the next attempt.  Returns its delay, or None once the budget is spent."""
        if self.exhausted:
            return None
        self.attempts += 1
        return self.policy.delay_for(self.attempts)

    def reset(self) -> None:
        self.attempts = 0
