from datetime import datetime, timedelta, timezone

import pytest

from rewards.config import RewardsConfig
from rewards.membership import StaticMembershipOracle
from rewards.service import RewardsService
from rewards.storage import InMemoryStorage


class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryStorage()


@pytest.fixture
def membership():
    return StaticMembershipOracle()


@pytest.fixture
def config():
    return RewardsConfig()


@pytest.fixture
def service(store, config, membership, clock):
    svc = RewardsService(store, config=config, membership=membership, clock=clock)
    yield svc
    svc.close()
