"""VisitStore against a real SQLite file, plus error translation."""

import pytest
from sqlalchemy import exc as sa_exc
from sqlalchemy.pool import QueuePool

from analytics.errors import DatastoreIntegrityError, TransientConnectivityError
from analytics.store import VisitRecord, VisitStore, make_engine, translate_errors


@pytest.fixture
def sqlite_store(tmp_path):
    store = VisitStore(make_engine(f"sqlite:///{tmp_path / 'visits.sqlite3'}", pool_size=2, pool_timeout=1))
    yield store
    store.dispose()


def visit(site_id, city=None, country=None, code=None):
    return VisitRecord(
        site_id=site_id,
        ip_address="203.0.113.9",
        city=city,
        country=country,
        country_code=code,
        browser="Firefox",
        os="Linux",
        device="desktop",
        user_agent="Mozilla/5.0",
    )


@pytest.mark.asyncio
async def test_ping_creates_schema(sqlite_store):
    assert await sqlite_store.ping() is True
    assert await sqlite_store.count_visits() == 0


@pytest.mark.asyncio
async def test_insert_and_aggregate(sqlite_store):
    await sqlite_store.insert_visit(visit("a.example.com", "Zurich", "Switzerland", "CH"))
    await sqlite_store.insert_visit(visit("a.example.com", "Zurich", "Switzerland", "CH"))
    await sqlite_store.insert_visit(visit("a.example.com", "Bern", "Switzerland", "CH"))
    await sqlite_store.insert_visit(visit("a.example.com", None, "Germany", "DE"))
    await sqlite_store.insert_visit(visit("b.example.com", "Paris", "France", "FR"))

    assert await sqlite_store.count_visits() == 5
    assert await sqlite_store.count_visits("a.example.com") == 4

    by_country = await sqlite_store.visits_by_country("a.example.com")
    assert by_country[0] == {"countryCode": "CH", "country": "Switzerland", "_count": {"_all": 3}}
    assert {"countryCode": "DE", "country": "Germany", "_count": {"_all": 1}} in by_country

    by_city = await sqlite_store.visits_by_city("a.example.com")
    assert by_city[0] == {"city": "Zurich", "countryCode": "CH", "_count": {"_all": 2}}
    assert all(row["city"] is not None for row in by_city)
    assert len(by_city) == 2


@pytest.mark.asyncio
async def test_fetch_stats(sqlite_store):
    await sqlite_store.insert_visit(visit("a.example.com", "Zurich", "Switzerland", "CH"))
    await sqlite_store.insert_visit(visit("b.example.com"))

    stats = await sqlite_store.fetch_stats()
    assert set(stats) == {"totalVisits", "visitsByCountry", "mapData"}
    assert stats["totalVisits"] == 2
    assert len(stats["visitsByCountry"]) == 2
    assert {"countryCode": "CH", "country": "Switzerland", "_count": {"_all": 1}} in stats["visitsByCountry"]
    assert stats["mapData"] == [{"city": "Zurich", "countryCode": "CH", "_count": {"_all": 1}}]

    filtered = await sqlite_store.fetch_stats("b.example.com")
    assert filtered["totalVisits"] == 1
    assert filtered["mapData"] == []


@pytest.mark.asyncio
async def test_unreachable_database_is_transient(tmp_path):
    # parent directory does not exist, so sqlite cannot open the file
    store = VisitStore(make_engine(f"sqlite:///{tmp_path / 'missing' / 'x.sqlite3'}"))
    with pytest.raises(TransientConnectivityError):
        await store.ping()


def test_in_memory_engine_skips_pool_sizing():
    engine = make_engine("sqlite://", pool_size=5, max_overflow=2, pool_timeout=1)
    assert not isinstance(engine.pool, QueuePool)
    engine.dispose()


class TestTranslateErrors:
    def _raise(self, error):
        with translate_errors():
            raise error

    def test_operational_error(self):
        with pytest.raises(TransientConnectivityError) as info:
            self._raise(sa_exc.OperationalError("SELECT 1", {}, Exception("connection refused")))
        assert "connection refused" in str(info.value)

    def test_pool_timeout(self):
        with pytest.raises(TransientConnectivityError):
            self._raise(sa_exc.TimeoutError("QueuePool limit of size 10 overflow 0 reached"))

    def test_integrity_error_is_fatal(self):
        with pytest.raises(DatastoreIntegrityError):
            self._raise(sa_exc.IntegrityError("INSERT", {}, Exception("duplicate key value")))

    def test_invalidated_connection(self):
        err = sa_exc.DBAPIError("SELECT 1", {}, Exception("server closed the connection"), connection_invalidated=True)
        with pytest.raises(TransientConnectivityError):
            self._raise(err)

    def test_other_errors_pass_through(self):
        with pytest.raises(sa_exc.ProgrammingError):
            self._raise(sa_exc.ProgrammingError("SELEC 1", {}, Exception("syntax error")))
        with pytest.raises(KeyError):
            self._raise(KeyError("x"))
