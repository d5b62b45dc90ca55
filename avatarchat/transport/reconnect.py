"""
AvatarChat — Reconnection Policy

Exponential backoff with a hard attempt ceiling.

    delay(n) = min(base × 2^(n-1), cap)      n = consecutive failures, n ≥ 1

With base 1 s, cap 10 s, max 5 attempts the delays are 1 s, 2 s, 4 s, 8 s
and the fifth failure exhausts the policy. A successful connect resets the
counter. Exhaustion is final: the owner moves to FAILED and never retries.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..core.config import ReconnectConfig

logger = logging.getLogger("avatarchat.reconnect")


class ReconnectionPolicy:

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 10.0,
        max_attempts: int = 5,
    ) -> None:
        if base_delay <= 0 or max_delay < base_delay:
            raise ValueError(f"Invalid backoff bounds: base={base_delay} cap={max_delay}")
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be ≥ 1, got {max_attempts}")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self._failures = 0

    @classmethod
    def from_config(cls, cfg: ReconnectConfig) -> "ReconnectionPolicy":
        return cls(
            base_delay=cfg.base_delay_ms / 1000,
            max_delay=cfg.max_delay_ms / 1000,
            max_attempts=cfg.max_attempts,
        )

    @property
    def attempts(self) -> int:
        """Consecutive failures since the last successful connect."""
        return self._failures

    @property
    def exhausted(self) -> bool:
        return self._failures >= self.max_attempts

    def delay_for(self, failures: int) -> float:
        """Backoff (seconds) after `failures` consecutive failures."""
        if failures < 1:
            return 0.0
        return min(self.base_delay * (2 ** (failures - 1)), self.max_delay)

    def record_failure(self) -> Optional[float]:
        """
        Count one failed/closed cycle.

        Returns the delay before the next attempt, or None once the
        attempt ceiling is reached.
        """
        self._failures += 1
        if self.exhausted:
            logger.warning(f"Reconnect budget exhausted after {self._failures} attempts")
            return None
        delay = self.delay_for(self._failures)
        logger.info(f"Reconnect attempt {self._failures}/{self.max_attempts} in {delay:.1f}s")
        return delay

    def record_success(self) -> None:
        if self._failures:
            logger.debug(f"Reconnect counter reset (was {self._failures})")
        self._failures = 0

    def reset(self) -> None:
        self._failures = 0
