import pytest

from fakes import BASE_TS, FakeClock
from location_sampler import Sample
from monitor_config import MonitorConfig


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return MonitorConfig(
        user_name="Juan",
        recipients_raw="09171234567, +639181234567",
        speed_limit_kmh=60.0,
        backend_url="http://relay.test",
    )


@pytest.fixture
def fix():
    return Sample(timestamp=BASE_TS, speed_kmh=0.0, latitude=14.5995, longitude=120.9842)
