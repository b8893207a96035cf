"""
Datastore adapter for visit records.

Every public method is a coroutine that runs its blocking SQLAlchemy work on
a worker thread, so the event loop stays free while a connection is being
established (which can take a while when the database is waking up).

SQLAlchemy exceptions are translated here into the errors.py taxonomy; the
retry executor classifies by type and never has to inspect driver messages.
"""

import asyncio
import logging
import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    func,
    select,
    text,
)
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Engine, make_url

from .errors import DatastoreIntegrityError, TransientConnectivityError

logger = logging.getLogger(__name__)

metadata = MetaData()

visits = Table(
    "visits",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("site_id", String(255), nullable=False, index=True),
    Column("ip_address", String(80)),
    Column("city", String(255)),
    Column("country", String(255)),
    Column("country_code", String(8)),
    Column("browser", String(50)),
    Column("os", String(50)),
    Column("device", String(50)),
    Column("referrer", String(500)),
    Column("user_agent", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
)


def _utcnow():
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class VisitRecord:
    site_id: str
    ip_address: str | None = None
    city: str | None = None
    country: str | None = None
    country_code: str | None = None
    browser: str | None = None
    os: str | None = None
    device: str | None = None
    referrer: str | None = None
    user_agent: str | None = None
    created_at: datetime = field(default_factory=_utcnow)


def make_engine(url: str, pool_size: int = 10, max_overflow: int = 0, pool_timeout: float = 30) -> Engine:
    """
    Pooled engine shared by every request. Pool exhaustion surfaces as a
    sqlalchemy TimeoutError after `pool_timeout`, which the store reports as
    a transient failure.
    """
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+psycopg://", 1)
    parsed = make_url(url)
    kwargs = {"pool_pre_ping": True}
    in_memory_sqlite = parsed.get_backend_name() == "sqlite" and parsed.database in (None, "", ":memory:")
    if not in_memory_sqlite:
        kwargs.update(
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_timeout=pool_timeout,
            pool_recycle=3600,
        )
    return create_engine(url, **kwargs)


@contextmanager
def translate_errors():
    try:
        yield
    except sa_exc.TimeoutError as e:
        raise TransientConnectivityError(f"connection pool timeout: {e}") from e
    except sa_exc.IntegrityError as e:
        raise DatastoreIntegrityError(str(e.orig)) from e
    except (sa_exc.OperationalError, sa_exc.InterfaceError) as e:
        raise TransientConnectivityError(str(e.orig)) from e
    except sa_exc.DisconnectionError as e:
        raise TransientConnectivityError(str(e)) from e
    except sa_exc.DBAPIError as e:
        if e.connection_invalidated:
            raise TransientConnectivityError(str(e.orig)) from e
        raise


def _grouped(row, keys: dict) -> dict:
    """
    Shape an aggregate row the way the dashboard reads it:
    {"countryCode": "CH", "country": "Switzerland", "_count": {"_all": 3}}
    """
    out = {name: row._mapping[column] for name, column in keys.items()}
    out["_count"] = {"_all": row._mapping["count"]}
    return out


def _site_filter(stmt, site_id):
    if site_id:
        stmt = stmt.where(visits.c.site_id == site_id)
    return stmt


class VisitStore:
    def __init__(self, engine: Engine):
        self.engine = engine
        self._schema_ready = False
        self._schema_lock = threading.Lock()

    def dispose(self):
        self.engine.dispose()

    # -------------------------------------------------------------------------
    # sync internals (run on worker threads)
    # -------------------------------------------------------------------------
    def _ensure_schema(self):
        if self._schema_ready:
            return
        with self._schema_lock:
            if not self._schema_ready:
                metadata.create_all(self.engine)
                self._schema_ready = True
                logger.info("visits schema ready")

    def _run(self, fn, *args):
        with translate_errors():
            self._ensure_schema()
            return fn(*args)

    def _ping(self):
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    def _insert(self, record: VisitRecord):
        with self.engine.begin() as conn:
            conn.execute(visits.insert().values(**asdict(record)))

    def _count(self, site_id):
        stmt = _site_filter(select(func.count()).select_from(visits), site_id)
        with self.engine.connect() as conn:
            return conn.execute(stmt).scalar_one()

    def _by_country(self, site_id, limit):
        hits = func.count().label("count")
        stmt = (
            select(visits.c.country_code, visits.c.country, hits)
            .group_by(visits.c.country_code, visits.c.country)
            .order_by(hits.desc())
            .limit(limit)
        )
        stmt = _site_filter(stmt, site_id)
        with self.engine.connect() as conn:
            return [
                _grouped(row, {"countryCode": "country_code", "country": "country"})
                for row in conn.execute(stmt)
            ]

    def _by_city(self, site_id, limit):
        hits = func.count().label("count")
        stmt = (
            select(visits.c.city, visits.c.country_code, hits)
            .where(visits.c.city.is_not(None))
            .group_by(visits.c.city, visits.c.country_code)
            .order_by(hits.desc())
            .limit(limit)
        )
        stmt = _site_filter(stmt, site_id)
        with self.engine.connect() as conn:
            return [
                _grouped(row, {"city": "city", "countryCode": "country_code"})
                for row in conn.execute(stmt)
            ]

    # -------------------------------------------------------------------------
    # async API
    # -------------------------------------------------------------------------
    async def ping(self) -> bool:
        return await asyncio.to_thread(self._run, self._ping)

    async def insert_visit(self, record: VisitRecord) -> None:
        """
        Not idempotent: if the commit succeeds but the response is lost, a
        retry stores the visit again.
        """
        await asyncio.to_thread(self._run, self._insert, record)

    async def count_visits(self, site_id: str | None = None) -> int:
        return await asyncio.to_thread(self._run, self._count, site_id)

    async def visits_by_country(self, site_id: str | None = None, limit: int = 10) -> list[dict]:
        return await asyncio.to_thread(self._run, self._by_country, site_id, limit)

    async def visits_by_city(self, site_id: str | None = None, limit: int = 100) -> list[dict]:
        return await asyncio.to_thread(self._run, self._by_city, site_id, limit)

    async def fetch_stats(self, site_id: str | None = None) -> dict:
        total, by_country, by_city = await asyncio.gather(
            self.count_visits(site_id),
            self.visits_by_country(site_id),
            self.visits_by_city(site_id),
        )
        return {
            "totalVisits": total,
            "visitsByCountry": by_country,
            "mapData": by_city,
        }
