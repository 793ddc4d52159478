import os
import tempfile
from datetime import datetime, timedelta

import pytest

# The service module builds its store at import time; point it at a scratch database.
_SERVICE_DIR = tempfile.mkdtemp(prefix="wayfinder-service-")
os.environ["WAYFINDER_DATABASE_URL"] = f"sqlite:///{_SERVICE_DIR}/service.sqlite"
os.environ["WAYFINDER_API_TOKEN"] = "test-token"

from wayfinder.location_store import LocationMemoryStore  # noqa: E402


class FakeClock:
    """Monotonic-style clock advanced by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDateClock:
    """Wall clock for the location store; starts on a Wednesday at 10:00."""

    def __init__(self, start: datetime = datetime(2024, 3, 6, 10, 0, 0)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def date_clock():
    return FakeDateClock()


@pytest.fixture
def store(tmp_path, date_clock):
    memory = LocationMemoryStore(f"sqlite:///{tmp_path / 'memory.sqlite'}", clock=date_clock)
    yield memory
    memory.close()
