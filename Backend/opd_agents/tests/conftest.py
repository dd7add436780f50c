from datetime import datetime

import pytest

from fakes import FakeGateway, FixedClock, fake_stores

CLINIC = "clinic-1"
NOW = datetime(2026, 3, 5, 10, 0, 0)


@pytest.fixture
def stores():
    return fake_stores()


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def gateway():
    return FakeGateway()
