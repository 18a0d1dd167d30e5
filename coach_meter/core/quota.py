"""
Monthly quota tracking and reset logic.

Each user has one quota row holding a running token total since the last
reset. The row is created lazily with configured defaults.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from coach_meter.storage.models import QuotaState, to_utc, utc_now
from coach_meter.storage.repository import UsageRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaStatus:
    """Result of a monthly quota check."""
    has_quota: bool
    remaining: int
    monthly_quota: int
    current_usage: int


def should_reset(last_reset_date: datetime, quota_reset_day: int, now: datetime) -> bool:
    """Decide whether a new quota cycle starts at ``now``.

    A cycle starts once the calendar month differs from the month of the
    last reset and the day of month has reached the reset day. Months
    shorter than the reset day never reset.
    """
    now = to_utc(now)
    last = to_utc(last_reset_date)
    if (now.year, now.month) == (last.year, last.month):
        return False
    return now.day >= quota_reset_day


class QuotaManager:
    """Reads and updates per-user monthly quota state."""

    def __init__(
        self,
        repository: UsageRepository,
        default_monthly_quota: int,
        default_reset_day: int,
        clock: Callable[[], datetime] = utc_now
    ):
        self.repository = repository
        self.default_monthly_quota = default_monthly_quota
        self.default_reset_day = default_reset_day
        self.clock = clock

    def _ensure_state(self, user_id: int, now: datetime) -> QuotaState:
        return self.repository.ensure_quota_state(
            user_id,
            monthly_quota=self.default_monthly_quota,
            quota_reset_day=self.default_reset_day,
            now=now
        )

    def get_state(self, user_id: int) -> Optional[QuotaState]:
        return self.repository.get_quota_state(user_id)

    def apply_usage(self, user_id: int, tokens: int) -> None:
        """Add a recorded event's tokens to the user's monthly usage.

        When a new cycle starts, usage is set to ``tokens`` (the event that
        opened the cycle) rather than zero. The reset is a compare-and-set on
        the last reset date; a writer that loses the race adds its tokens to
        the cycle the winner started.

        Raises:
            ValueError: If tokens is negative
            sqlite3.Error: If the quota row cannot be read or written
        """
        if tokens < 0:
            raise ValueError("tokens cannot be negative")

        now = self.clock()
        state = self._ensure_state(user_id, now)

        if should_reset(state.last_reset_date, state.quota_reset_day, now):
            if self.repository.reset_usage_if_unchanged(
                user_id, tokens, state.last_reset_date, now
            ):
                logger.info(
                    "Monthly quota reset for user %s (cycle opened with %d tokens)",
                    user_id, tokens
                )
                return
            logger.debug("Quota cycle for user %s already reset by another writer", user_id)

        self.repository.increment_usage(user_id, tokens, now)

    def check_quota(self, user_id: int) -> QuotaStatus:
        """Report the user's remaining monthly quota.

        Fails closed: if the quota row cannot be read, the user is reported
        as having no quota left and the error is logged.
        """
        try:
            state = self._ensure_state(user_id, self.clock())
        except sqlite3.Error:
            logger.exception("Error checking quota for user %s", user_id)
            return QuotaStatus(
                has_quota=False,
                remaining=0,
                monthly_quota=self.default_monthly_quota,
                current_usage=self.default_monthly_quota
            )

        remaining = state.remaining
        return QuotaStatus(
            has_quota=remaining > 0,
            remaining=remaining,
            monthly_quota=state.monthly_quota,
            current_usage=state.current_usage
        )

    def update_quota(self, user_id: int, new_quota: int) -> None:
        """Override a user's monthly quota, creating the row if absent.

        Raises:
            ValueError: If new_quota is negative
        """
        if new_quota < 0:
            raise ValueError("monthly quota cannot be negative")

        self.repository.set_monthly_quota(
            user_id,
            monthly_quota=new_quota,
            quota_reset_day=self.default_reset_day,
            now=self.clock()
        )
        logger.info("Monthly quota for user %s set to %d tokens", user_id, new_quota)
