"""
Metering engine.

Wires the cost calculator, ledger, quota manager, daily limiter, recorder and
analytics from a single configuration object. This is the surface the chat
dispatcher and admin tooling talk to.
"""

from datetime import datetime
from typing import Callable, List, Optional, Union

from .analytics import (
    AggregatedTokenStats,
    AnalyticsAggregator,
    Period,
    PeriodUsage,
    UserTokenStats,
)
from .daily_limiter import DailyLimiter, DailyLimitStatus
from .pricing import CostCalculator
from .quota import QuotaManager, QuotaStatus
from .recorder import UsageRecorder
from coach_meter.config.loader import MeteringConfig, default_config
from coach_meter.storage.models import RegisteredUser, UsageData, UsageEvent, utc_now
from coach_meter.storage.repository import UsageRepository


class MeteringEngine:
    """Usage metering and quota enforcement for AI model calls."""

    def __init__(
        self,
        config: Optional[MeteringConfig] = None,
        repository: Optional[UsageRepository] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        """Build the engine.

        Args:
            config: Metering configuration (defaults to the reference deployment)
            repository: Storage backend (defaults to SQLite at config.db_path)
            clock: Source of the current time; injectable for tests
        """
        self.config = config or default_config()
        self.repository = repository or UsageRepository(
            self.config.db_path, self.config.timeout_seconds
        )
        self.clock = clock

        self.calculator = CostCalculator(self.config.pricing)
        self.limiter = DailyLimiter(self.repository, self.config.daily_token_limit, clock)
        self.quotas = QuotaManager(
            self.repository,
            default_monthly_quota=self.config.monthly_quota,
            default_reset_day=self.config.quota_reset_day,
            clock=clock
        )
        self.recorder = UsageRecorder(self.repository, self.calculator, self.quotas, clock)
        self.analytics = AnalyticsAggregator(
            self.repository, self.limiter, self.config.monthly_quota, clock
        )

    def initialize(self) -> None:
        """Create the metering tables if they don't exist."""
        self.repository.initialize_schema()

    # Chat dispatcher

    def check_daily_limit(self, user_id: int) -> DailyLimitStatus:
        return self.limiter.check(user_id)

    def record_usage(self, usage: UsageData) -> UsageEvent:
        return self.recorder.record(usage)

    # Quota

    def check_quota(self, user_id: int) -> QuotaStatus:
        return self.quotas.check_quota(user_id)

    def update_quota(self, user_id: int, new_quota: int) -> None:
        self.quotas.update_quota(user_id, new_quota)

    def register_user(self, user_id: int, username: str) -> RegisteredUser:
        return self.repository.register_user(user_id, username, self.clock())

    # Analytics

    def get_user_token_stats(self, user_id: Optional[int] = None) -> List[UserTokenStats]:
        return self.analytics.get_user_token_stats(user_id)

    def get_top_users(self, limit: int = 10) -> List[UserTokenStats]:
        return self.analytics.get_top_users(limit)

    def get_token_usage_by_period(
        self,
        user_id: Optional[int] = None,
        period: Union[Period, str] = Period.MONTH,
        days: Optional[int] = None
    ) -> List[PeriodUsage]:
        return self.analytics.get_token_usage_by_period(user_id, period, days)

    def get_aggregated_token_stats(self) -> AggregatedTokenStats:
        return self.analytics.get_aggregated_token_stats()
