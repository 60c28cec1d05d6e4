from datetime import datetime, timedelta, timezone

import pytest

from batches import BatchService
from retry import RetryPolicy
from settings import Settings
from storage import Storage
from worker import Worker


class FakeClock:
    def __init__(self, start=None):
        self.current = start or datetime(2020, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.current

    def advance(self, seconds):
        self.current += timedelta(seconds=seconds)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    monkeypatch.delenv("BATCHCTL_DB", raising=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "batchctl.db")


@pytest.fixture
def db(db_path, clock):
    storage = Storage(db_path, clock=clock)
    yield storage
    storage.close()


@pytest.fixture
def service(db):
    return BatchService(db, settings=Settings())


@pytest.fixture
def make_worker(db):
    def factory(processor, **kwargs):
        kwargs.setdefault("db", db)
        kwargs.setdefault("keep_lease", False)
        kwargs.setdefault("poll_interval", 0.01)
        kwargs.setdefault("retry_policy", RetryPolicy(backoff_base=1.0, backoff_cap=8.0))
        return Worker(processor, **kwargs)
    return factory
