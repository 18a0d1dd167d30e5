"""
Usage analytics for administrative dashboards.

Read-only queries over the usage ledger and quota state. A storage failure
never propagates out of this module: the error is logged and an empty or
zeroed result is returned.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional, Tuple, Union

from .daily_limiter import DailyLimiter, day_window
from coach_meter.storage.models import to_utc, utc_now
from coach_meter.storage.repository import UsageRepository

logger = logging.getLogger(__name__)


class Period(Enum):
    """Bucket granularity for time-series usage."""
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


@dataclass(frozen=True)
class UserTokenStats:
    """Usage and quota snapshot for one user."""
    user_id: int
    username: Optional[str]
    total_tokens: int
    tokens_today: int
    tokens_this_month: int
    total_cost_cents: int
    monthly_quota: int
    quota_remaining: int
    daily_quota: int
    daily_quota_remaining: int
    last_usage: Optional[datetime] = None

    @property
    def total_cost_dollars(self) -> float:
        return self.total_cost_cents / 100


@dataclass(frozen=True)
class PeriodUsage:
    """Ledger totals for one time bucket."""
    date: str
    tokens: int
    cost_cents: int

    @property
    def cost_dollars(self) -> float:
        return self.cost_cents / 100


@dataclass(frozen=True)
class AggregatedTokenStats:
    """Global usage snapshot."""
    total_tokens: int = 0
    total_cost_cents: int = 0
    active_users: int = 0
    avg_tokens_per_user: float = 0.0

    @property
    def total_cost_dollars(self) -> float:
        return self.total_cost_cents / 100


def month_window(now: datetime) -> Tuple[datetime, datetime]:
    """Return [start of the UTC calendar month, start of the next one)."""
    start = to_utc(now).replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        return start, start.replace(year=start.year + 1, month=1)
    return start, start.replace(month=start.month + 1)


class AnalyticsAggregator:
    """Read-side reporting over the ledger and quota table."""

    def __init__(
        self,
        repository: UsageRepository,
        limiter: DailyLimiter,
        default_monthly_quota: int,
        clock: Callable[[], datetime] = utc_now
    ):
        self.repository = repository
        self.limiter = limiter
        self.default_monthly_quota = default_monthly_quota
        self.clock = clock

    def get_user_token_stats(self, user_id: Optional[int] = None) -> List[UserTokenStats]:
        """Per-user usage and quota statistics.

        Daily figures use the same UTC day window and cap as the daily
        limiter, so ``tokens_today`` matches what a limit check reports.

        Args:
            user_id: Restrict to one user; None returns every known user

        Returns:
            One UserTokenStats per user, ordered by user_id
        """
        now = self.clock()
        day_start, day_end = day_window(now)
        month_start, month_end = month_window(now)

        try:
            rows = self.repository.get_user_aggregates(
                day_start, day_end, month_start, month_end, user_id=user_id
            )
        except sqlite3.Error:
            logger.exception("Error getting user token stats")
            return []

        stats = []
        for row in rows:
            monthly_quota = row["monthly_quota"]
            if monthly_quota is None:
                monthly_quota = self.default_monthly_quota
            current_usage = row["current_usage"] or 0
            daily = self.limiter.status_for(row["tokens_today"])

            stats.append(UserTokenStats(
                user_id=row["user_id"],
                username=row["username"],
                total_tokens=row["total_tokens"],
                tokens_today=row["tokens_today"],
                tokens_this_month=row["tokens_this_month"],
                total_cost_cents=row["total_cost_cents"],
                monthly_quota=monthly_quota,
                quota_remaining=max(0, monthly_quota - current_usage),
                daily_quota=self.limiter.daily_limit,
                daily_quota_remaining=daily.remaining,
                last_usage=row["last_usage"]
            ))
        return stats

    def get_top_users(self, limit: int = 10) -> List[UserTokenStats]:
        """Users with the most tokens ever recorded, heaviest first.

        Ties are broken by user_id.

        Raises:
            ValueError: If limit < 1
        """
        if limit < 1:
            raise ValueError("limit must be >= 1")
        stats = self.get_user_token_stats()
        stats.sort(key=lambda s: (-s.total_tokens, s.user_id))
        return stats[:limit]

    def get_token_usage_by_period(
        self,
        user_id: Optional[int] = None,
        period: Union[Period, str] = Period.MONTH,
        days: Optional[int] = None
    ) -> List[PeriodUsage]:
        """Time series of tokens and cost, oldest bucket first.

        Only buckets containing at least one event are returned.

        Args:
            user_id: Restrict to one user; None counts every user
            period: Bucket size
            days: Only count the last ``days`` UTC days, today included

        Raises:
            ValueError: If period is not day, week or month, or days < 1
        """
        period = Period(period)
        since = None
        if days is not None:
            if days < 1:
                raise ValueError("days must be >= 1")
            since = day_window(self.clock())[0] - timedelta(days=days - 1)

        try:
            rows = self.repository.get_usage_by_period(
                period.value, user_id=user_id, since=since
            )
        except sqlite3.Error:
            logger.exception("Error getting token usage by period")
            return []

        return [
            PeriodUsage(date=row["date"], tokens=row["tokens"], cost_cents=row["cost_cents"])
            for row in rows
        ]

    def get_aggregated_token_stats(self) -> AggregatedTokenStats:
        """Global totals.

        The per-user average divides by all registered users, not only the
        ones with ledger activity.
        """
        try:
            totals = self.repository.get_ledger_totals()
            registered_users = self.repository.count_registered_users()
        except sqlite3.Error:
            logger.exception("Error getting aggregated token stats")
            return AggregatedTokenStats()

        avg_tokens_per_user = 0.0
        if registered_users > 0:
            avg_tokens_per_user = totals["total_tokens"] / registered_users

        return AggregatedTokenStats(
            total_tokens=totals["total_tokens"],
            total_cost_cents=totals["total_cost_cents"],
            active_users=totals["active_users"],
            avg_tokens_per_user=avg_tokens_per_user
        )
