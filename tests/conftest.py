"""Shared fixtures: fake datastore, recording sleep, app wired with both."""

import pytest

from analytics.app import create_app
from analytics.errors import TransientConnectivityError
from analytics.resilience import ResilientExecutor, RetryPolicy


class RecordingSleep:
    """Stands in for asyncio.sleep; records the requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)

    @property
    def total(self) -> float:
        return sum(self.delays)


class FakeStore:
    """
    In-memory VisitStore double. `fail_times` transient failures are raised
    before each operation starts succeeding; -1 means fail forever.
    """

    def __init__(self, fail_times: int = 0, error: Exception | None = None):
        self.fail_times = fail_times
        self.error = error or TransientConnectivityError("connect ECONNREFUSED 127.0.0.1:5432")
        self.calls = 0
        self.inserted = []

    def _maybe_fail(self):
        self.calls += 1
        if self.fail_times == -1 or self.calls <= self.fail_times:
            raise self.error

    async def ping(self):
        self._maybe_fail()
        return True

    async def insert_visit(self, record):
        self._maybe_fail()
        self.inserted.append(record)

    async def fetch_stats(self, site_id=None):
        self._maybe_fail()
        rows = [r for r in self.inserted if site_id is None or r.site_id == site_id]
        return {"totalVisits": len(rows), "visitsByCountry": [], "mapData": []}


FAST_POLICY = RetryPolicy(max_attempts=3, initial_delay=0.01, max_delay=0.02, label="test")


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def executor(sleep):
    return ResilientExecutor(sleep=sleep)


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def geo():
    def lookup(ip):
        if ip == "81.2.69.142":
            return {"city": "London", "country": "United Kingdom", "country_code": "GB"}
        return None
    return lookup


@pytest.fixture
def app(store, executor, geo):
    app = create_app(
        {"TESTING": True, "CORS_ALLOW_ORIGINS": ["https://mbh.photos"]},
        store=store,
        executor=executor,
        geo_lookup=geo,
    )
    return app


@pytest.fixture
def client(app):
    return app.test_client()
