"""
Bounded retry policy.

A fixed cap on consecutive restarts with a capped backoff schedule; the last
schedule entry repeats once the schedule is exhausted.
"""

from dataclasses import dataclass
from typing import Sequence, Tuple


DEFAULT_BACKOFF_SCHEDULE_MS: Tuple[int, ...] = (1000, 2000, 4000, 8000, 10000)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 5
    backoff_schedule_ms: Sequence[int] = DEFAULT_BACKOFF_SCHEDULE_MS

    def __post_init__(self):
        object.__setattr__(self, "backoff_schedule_ms", tuple(self.backoff_schedule_ms) or (0,))

    def allows(self, retry_count: int) -> bool:
        """True while another restart is permitted after retry_count restarts."""
        return retry_count < self.max_retries

    def delay_for(self, attempt_num: int) -> float:
        """Backoff in seconds before restart number attempt_num (1-based)."""
        idx = min(max(attempt_num, 1) - 1, len(self.backoff_schedule_ms) - 1)
        return self.backoff_schedule_ms[idx] / 1000.0
