"""Retry scheduling for failed delivery attempts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

DEFAULT_BACKOFF_BASE = 1.0  # seconds
DEFAULT_BACKOFF_MAX = 3600.0  # 1h


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with a cap and an optional attempt ceiling.

    ``max_attempts=None`` keeps retrying forever; otherwise a job whose
    attempt count reaches the ceiling is parked in ``error``.
    """

    base: float = DEFAULT_BACKOFF_BASE
    max_delay: float = DEFAULT_BACKOFF_MAX
    max_attempts: Optional[int] = None

    def delay_for(self, attempts: int) -> float:
        """Seconds to wait after the ``attempts``-th failed attempt.

        ``min(max_delay, base * 2 ** attempts)``
        """
        exponent = max(0, int(attempts))
        # 2 ** 64 seconds is far past any sane cap
        if exponent > 64:
            return float(self.max_delay)
        return float(min(self.max_delay, self.base * (2 ** exponent)))

    def next_run_at(self, attempts: int, now: int) -> int:
        """Epoch milliseconds at which the job becomes claimable again."""
        return now + int(self.delay_for(attempts) * 1000)

    def exhausted(self, attempts: int) -> bool:
        """Return ``True`` when no further automatic retry is allowed."""
        return self.max_attempts is not None and attempts >= self.max_attempts
