from datetime import datetime, timedelta

import pytest

from db import MemoryKeyValueStore
from models import AppSettings
from visit_store import VisitStore


class FixedClock:
    """Clock returning a settable instant."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FailingKeyValueStore(MemoryKeyValueStore):
    def set(self, key, value):
        raise ConnectionError("storage unavailable")


@pytest.fixture
def kv():
    return MemoryKeyValueStore()


@pytest.fixture
def clock():
    return FixedClock(datetime(2025, 3, 4, 9, 0))


@pytest.fixture
def store(kv, clock):
    return VisitStore(kv, AppSettings(), clock=clock)
