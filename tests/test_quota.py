"""
Unit tests for monthly quota tracking.

Tests lazy creation, cycle reset semantics, admin overrides and concurrent
writers.
"""

import threading
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from coach_meter.config.loader import MeteringConfig
from coach_meter.core.engine import MeteringEngine
from coach_meter.core.quota import should_reset
from coach_meter.storage.models import UsageData


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def _usage(user_id, tokens):
    return UsageData(user_id=user_id, coach_type="shadow_self", prompt_tokens=tokens, completion_tokens=0)


class TestShouldReset:

    def test_same_month_never_resets(self):
        assert should_reset(_utc(2026, 3, 1), 1, _utc(2026, 3, 31)) is False

    def test_new_month_on_reset_day(self):
        assert should_reset(_utc(2026, 2, 10), 1, _utc(2026, 3, 1)) is True

    def test_new_month_before_reset_day(self):
        assert should_reset(_utc(2026, 2, 10), 20, _utc(2026, 3, 19)) is False
        assert should_reset(_utc(2026, 2, 10), 20, _utc(2026, 3, 20)) is True

    def test_year_boundary(self):
        assert should_reset(_utc(2025, 12, 5), 1, _utc(2026, 1, 2)) is True

    def test_same_month_number_different_year(self):
        assert should_reset(_utc(2025, 3, 15), 1, _utc(2026, 3, 15)) is True

    def test_short_month_skips_late_reset_day(self):
        # April has no 31st, so a reset day of 31 never fires in April
        assert should_reset(_utc(2026, 3, 31), 31, _utc(2026, 4, 30)) is False


class TestCheckQuota:

    def test_lazily_creates_default_state(self, engine):
        assert engine.quotas.get_state(1) is None

        status = engine.check_quota(1)
        assert status.has_quota is True
        assert status.remaining == 500000
        assert status.monthly_quota == 500000
        assert status.current_usage == 0
        assert engine.quotas.get_state(1) is not None

    def test_reflects_recorded_usage(self, engine):
        engine.record_usage(_usage(1, 1200))
        engine.record_usage(_usage(1, 300))

        status = engine.check_quota(1)
        assert status.current_usage == 1500
        assert status.remaining == 498500

    def test_exhausted_quota(self, engine):
        engine.update_quota(1, 1000)
        engine.record_usage(_usage(1, 1200))

        status = engine.check_quota(1)
        assert status.has_quota is False
        assert status.remaining == 0
        assert status.current_usage == 1200

    def test_fails_closed_on_storage_error(self, db_path, clock):
        metering = MeteringEngine(MeteringConfig(db_path=db_path), clock=clock)

        status = metering.check_quota(1)
        assert status.has_quota is False
        assert status.remaining == 0
        assert status.monthly_quota == 500000
        assert status.current_usage == 500000


class TestApplyUsage:

    def test_first_event_creates_state(self, engine, clock):
        engine.record_usage(_usage(1, 250))

        state = engine.quotas.get_state(1)
        assert state.current_usage == 250
        assert state.monthly_quota == 500000
        assert state.quota_reset_day == 1
        assert state.last_reset_date == clock()

    def test_zero_token_event_leaves_usage_unchanged(self, engine):
        engine.record_usage(_usage(1, 400))
        before = engine.quotas.get_state(1).current_usage

        engine.record_usage(UsageData(
            user_id=1, coach_type="inner_child", prompt_tokens=0, completion_tokens=0
        ))

        assert engine.quotas.get_state(1).current_usage == before == 400
        assert len(engine.repository.fetch_events(user_id=1)) == 2

    def test_new_cycle_starts_with_event_tokens(self, engine, clock):
        clock.set(2026, 2, 10, 9, 0)
        engine.record_usage(_usage(1, 1000))

        clock.set(2026, 3, 15, 9, 0)
        engine.record_usage(_usage(1, 100))

        state = engine.quotas.get_state(1)
        assert state.current_usage == 100
        assert state.last_reset_date == _utc(2026, 3, 15, 9, 0)

    def test_usage_accumulates_after_reset(self, engine, clock):
        clock.set(2026, 2, 10, 9, 0)
        engine.record_usage(_usage(1, 1000))
        clock.set(2026, 3, 1, 0, 5)
        engine.record_usage(_usage(1, 100))
        clock.set(2026, 3, 2, 0, 5)
        engine.record_usage(_usage(1, 40))

        assert engine.quotas.get_state(1).current_usage == 140

    def test_configured_reset_day(self, db_path, clock):
        metering = MeteringEngine(
            MeteringConfig(db_path=db_path, quota_reset_day=20), clock=clock
        )
        metering.initialize()

        clock.set(2026, 2, 10)
        metering.record_usage(_usage(1, 1000))
        clock.set(2026, 3, 15)
        metering.record_usage(_usage(1, 100))
        assert metering.quotas.get_state(1).current_usage == 1100

        clock.set(2026, 3, 20)
        metering.record_usage(_usage(1, 50))
        assert metering.quotas.get_state(1).current_usage == 50

    def test_negative_tokens_rejected(self, engine):
        with pytest.raises(ValueError, match="negative"):
            engine.quotas.apply_usage(1, -5)

    def test_losing_reset_writer_adds_to_new_cycle(self, engine, clock):
        clock.set(2026, 2, 10)
        engine.record_usage(_usage(1, 1000))
        stale = engine.quotas.get_state(1)

        clock.set(2026, 3, 15)
        engine.quotas.apply_usage(1, 100)

        # A second writer that read the state before the reset
        with patch.object(engine.repository, "ensure_quota_state", return_value=stale):
            engine.quotas.apply_usage(1, 60)

        assert engine.quotas.get_state(1).current_usage == 160

    def test_concurrent_increments_are_not_lost(self, engine):
        engine.check_quota(1)
        workers, per_worker, tokens = 8, 20, 5
        errors = []

        def work():
            try:
                for _ in range(per_worker):
                    engine.quotas.apply_usage(1, tokens)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=work) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert engine.quotas.get_state(1).current_usage == workers * per_worker * tokens


class TestUpdateQuota:

    def test_creates_state_when_absent(self, engine):
        engine.update_quota(9, 1234)

        status = engine.check_quota(9)
        assert status.monthly_quota == 1234
        assert status.current_usage == 0
        assert status.remaining == 1234

    def test_keeps_current_usage(self, engine):
        engine.record_usage(_usage(1, 300))
        engine.update_quota(1, 1000)

        status = engine.check_quota(1)
        assert status.monthly_quota == 1000
        assert status.current_usage == 300
        assert status.remaining == 700

    def test_zero_quota_allowed(self, engine):
        engine.update_quota(1, 0)
        assert engine.check_quota(1).has_quota is False

    def test_negative_quota_rejected(self, engine):
        with pytest.raises(ValueError, match="cannot be negative"):
            engine.update_quota(1, -1)
