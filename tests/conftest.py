"""
Shared fixtures for metering tests.
"""

import os
from datetime import datetime, timedelta, timezone

import pytest

from coach_meter.config.loader import MeteringConfig
from coach_meter.core.engine import MeteringEngine


class FixedClock:
    """Controllable replacement for utc_now."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, *args, **kwargs) -> None:
        self.now = datetime(*args, tzinfo=timezone.utc, **kwargs)

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def db_path(tmp_path):
    return os.path.join(str(tmp_path), "test.db")


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 3, 15, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def engine(db_path, clock):
    metering = MeteringEngine(MeteringConfig(db_path=db_path), clock=clock)
    metering.initialize()
    return metering
