"""
Unit tests for the daily token cap.

Tests the UTC day window, cap arithmetic and the fail-open policy.
"""

import sqlite3
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from coach_meter.config.loader import MeteringConfig
from coach_meter.core.daily_limiter import DailyLimiter, day_window
from coach_meter.core.engine import MeteringEngine
from coach_meter.storage.models import UsageData


def _usage(user_id, prompt, completion=0, coach_type="inner_child"):
    return UsageData(
        user_id=user_id,
        coach_type=coach_type,
        prompt_tokens=prompt,
        completion_tokens=completion
    )


class TestDayWindow:

    def test_window_covers_utc_day(self):
        start, end = day_window(datetime(2026, 3, 15, 18, 45, tzinfo=timezone.utc))
        assert start == datetime(2026, 3, 15, tzinfo=timezone.utc)
        assert end == datetime(2026, 3, 16, tzinfo=timezone.utc)

    def test_window_converts_to_utc(self):
        tokyo = timezone(timedelta(hours=9))
        # 2026-03-16 02:00 in Tokyo is still 2026-03-15 in UTC
        start, _ = day_window(datetime(2026, 3, 16, 2, 0, tzinfo=tokyo))
        assert start == datetime(2026, 3, 15, tzinfo=timezone.utc)


class TestDailyLimiter:
    """Test DailyLimiter.check."""

    def test_new_user_has_full_allowance(self, engine):
        status = engine.check_daily_limit(1)
        assert status.can_proceed is True
        assert status.tokens_used_today == 0
        assert status.remaining == 16000

    def test_near_cap_then_over(self, engine):
        engine.record_usage(_usage(1, 15000, 900))

        before = engine.check_daily_limit(1)
        assert before.tokens_used_today == 15900
        assert before.remaining == 100
        assert before.can_proceed is True

        engine.record_usage(_usage(1, 200, 100))

        after = engine.check_daily_limit(1)
        assert after.tokens_used_today == 16200
        assert after.remaining == 0
        assert after.can_proceed is False

    def test_exactly_at_cap_is_blocked(self, engine):
        engine.record_usage(_usage(1, 16000))
        status = engine.check_daily_limit(1)
        assert status.can_proceed is False
        assert status.remaining == 0

    def test_one_below_cap_is_allowed(self, engine):
        engine.record_usage(_usage(1, 15999))
        status = engine.check_daily_limit(1)
        assert status.can_proceed is True
        assert status.remaining == 1

    def test_reported_usage_matches_ledger(self, engine, clock):
        amounts = [(120, 80), (0, 0), (3000, 1500), (7, 0), (250, 250)]
        for prompt, completion in amounts:
            engine.record_usage(_usage(1, prompt, completion))
            clock.advance(minutes=5)

        ledger_today = sum(
            e.total_tokens for e in engine.repository.fetch_events(user_id=1)
        )
        assert engine.check_daily_limit(1).tokens_used_today == ledger_today == 5207

    def test_other_users_do_not_count(self, engine):
        engine.record_usage(_usage(2, 16000))
        status = engine.check_daily_limit(1)
        assert status.tokens_used_today == 0
        assert status.can_proceed is True

    def test_yesterday_does_not_count(self, engine, clock):
        clock.set(2026, 3, 14, 23, 59, 59)
        engine.record_usage(_usage(1, 16000))

        clock.set(2026, 3, 15, 0, 0, 0)
        status = engine.check_daily_limit(1)
        assert status.tokens_used_today == 0
        assert status.can_proceed is True

    def test_limit_is_configurable(self, db_path, clock):
        metering = MeteringEngine(
            MeteringConfig(db_path=db_path, daily_token_limit=500), clock=clock
        )
        metering.initialize()
        metering.record_usage(_usage(1, 500))

        status = metering.check_daily_limit(1)
        assert status.can_proceed is False
        assert status.remaining == 0

    def test_non_positive_limit_rejected(self):
        with pytest.raises(ValueError, match="daily_limit"):
            DailyLimiter(Mock(), daily_limit=0)


class TestFailOpen:
    """Metering outages never block a user."""

    def test_unreadable_ledger_admits_request(self, db_path, clock):
        # Schema never created, so every read fails
        metering = MeteringEngine(MeteringConfig(db_path=db_path), clock=clock)

        status = metering.check_daily_limit(1)
        assert status.can_proceed is True
        assert status.tokens_used_today == 0
        assert status.remaining == 16000

    def test_storage_error_is_logged(self, caplog):
        repository = Mock()
        repository.sum_tokens_between.side_effect = sqlite3.OperationalError("disk I/O error")
        limiter = DailyLimiter(repository, daily_limit=100)

        with caplog.at_level("ERROR", logger="coach_meter.core.daily_limiter"):
            status = limiter.check(5)

        assert status.can_proceed is True
        assert "Error checking daily token limit for user 5" in caplog.text

    def test_non_storage_errors_propagate(self):
        repository = Mock()
        repository.sum_tokens_between.side_effect = RuntimeError("bug")
        limiter = DailyLimiter(repository, daily_limit=100)

        with pytest.raises(RuntimeError):
            limiter.check(5)
