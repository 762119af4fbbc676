from datetime import datetime, timezone

import pytest

from api.container import build_services
from common.clock import FixedClock
from common.config import EscrowSettings

NOW = datetime(2030, 1, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def settings():
    return EscrowSettings(_env_file=None, seed_demo_data=False)


@pytest.fixture
def services(settings, clock):
    return build_services(settings=settings, clock=clock)
