"""
Daily token cap enforcement.

Derives a user's consumption for the current UTC day from the usage ledger
and compares it against a fixed cap.

The check and the later record are not atomic: two concurrent requests for
the same user can both be admitted before either is recorded, so the day's
total may overshoot the cap by up to one request. This is a soft cap.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Tuple

from coach_meter.storage.models import to_utc, utc_now
from coach_meter.storage.repository import UsageRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DailyLimitStatus:
    """Result of a daily limit check."""
    can_proceed: bool
    tokens_used_today: int
    remaining: int


def day_window(now: datetime) -> Tuple[datetime, datetime]:
    """Return [start of the UTC day, start of the next UTC day) for ``now``."""
    start = to_utc(now).replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


class DailyLimiter:
    """Gate requests against a per-user daily token cap."""

    def __init__(
        self,
        repository: UsageRepository,
        daily_limit: int,
        clock: Callable[[], datetime] = utc_now
    ):
        if daily_limit <= 0:
            raise ValueError("daily_limit must be > 0")
        self.repository = repository
        self.daily_limit = daily_limit
        self.clock = clock

    def status_for(self, tokens_used_today: int) -> DailyLimitStatus:
        """Evaluate the cap for an already-known token count."""
        return DailyLimitStatus(
            can_proceed=tokens_used_today < self.daily_limit,
            tokens_used_today=tokens_used_today,
            remaining=max(0, self.daily_limit - tokens_used_today)
        )

    def check(self, user_id: int) -> DailyLimitStatus:
        """Check whether a user may make another model call today.

        Fails open: if the ledger cannot be read, the request is admitted
        and the error is logged.

        Args:
            user_id: User making the request

        Returns:
            DailyLimitStatus with today's usage and remaining tokens
        """
        start, end = day_window(self.clock())
        try:
            used = self.repository.sum_tokens_between(user_id, start, end)
        except sqlite3.Error:
            logger.exception("Error checking daily token limit for user %s", user_id)
            return self.status_for(0)

        return self.status_for(used)
