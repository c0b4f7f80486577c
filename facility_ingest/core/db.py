"""Inventory persistence gateways."""

import copy
import logging
import threading
import zlib
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Protocol

import psycopg2
from psycopg2 import extras, pool

from facility_ingest.core.config import get_settings
from facility_ingest.core.errors import PersistenceError, PersistenceUnavailableError

logger = logging.getLogger(__name__)

# Key for pg_advisory_lock; every ingestion process must use the same value.
INGESTION_LOCK_KEY = zlib.crc32(b"facility_ingest.inventory")


class InventoryGateway(Protocol):
    def find_all(self) -> List[Dict[str, Any]]:
        ...

    def find_by_id(self, record_id: str) -> Optional[Dict[str, Any]]:
        ...

    def save(self, row: Dict[str, Any]) -> None:
        ...

    def write_lock(self):
        ...


SCHEMA_SQL = """
CREATE EXTENSION IF NOT EXISTS postgis;

CREATE TABLE IF NOT EXISTS facilities (
    id TEXT PRIMARY KEY,
    name TEXT,
    location TEXT,
    latitude DOUBLE PRECISION NOT NULL,
    longitude DOUBLE PRECISION NOT NULL,
    geom geography(Point, 4326) NOT NULL,
    facilities JSONB NOT NULL DEFAULT '[]'::jsonb,
    type TEXT NOT NULL DEFAULT 'public',
    source TEXT NOT NULL,
    verified BOOLEAN NOT NULL DEFAULT FALSE,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    last_updated TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS facilities_geom_idx ON facilities USING GIST (geom);
"""

_SELECT_COLUMNS = """
SELECT id, name, location, latitude, longitude, facilities, type, source, verified, metadata, last_updated
FROM facilities
"""

_UPSERT_FACILITY = """
INSERT INTO facilities (
    id,
    name,
    location,
    latitude,
    longitude,
    geom,
    facilities,
    type,
    source,
    verified,
    metadata,
    last_updated
) VALUES (
    %(id)s,
    %(name)s,
    %(location)s,
    %(lat)s,
    %(lng)s,
    ST_SetSRID(ST_MakePoint(%(lng)s, %(lat)s), 4326)::geography,
    %(facilities)s,
    %(type)s,
    %(source)s,
    %(verified)s,
    %(metadata)s,
    COALESCE(%(last_updated)s, NOW())
)
ON CONFLICT (id) DO UPDATE SET
    name = EXCLUDED.name,
    location = EXCLUDED.location,
    latitude = EXCLUDED.latitude,
    longitude = EXCLUDED.longitude,
    geom = EXCLUDED.geom,
    facilities = EXCLUDED.facilities,
    type = EXCLUDED.type,
    source = EXCLUDED.source,
    verified = EXCLUDED.verified,
    metadata = EXCLUDED.metadata,
    last_updated = EXCLUDED.last_updated;
"""


def _prepare_params(row: Dict[str, Any]) -> Dict[str, Any]:
    coordinates = row.get("coordinates") or {}
    return {
        "id": row.get("id"),
        "name": row.get("name"),
        "location": row.get("location"),
        "lat": coordinates.get("latitude"),
        "lng": coordinates.get("longitude"),
        "facilities": extras.Json(row.get("facilities") or []),
        "type": row.get("type") or "public",
        "source": row.get("source"),
        "verified": bool(row.get("verified")),
        "metadata": extras.Json(row.get("metadata") or {}),
        "last_updated": row.get("last_updated"),
    }


def _row_from_db(record: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": record["id"],
        "name": record["name"],
        "location": record["location"],
        "coordinates": {"latitude": record["latitude"], "longitude": record["longitude"]},
        "facilities": record["facilities"] or [],
        "type": record["type"],
        "source": record["source"],
        "verified": record["verified"],
        "metadata": record["metadata"] or {},
        "last_updated": record["last_updated"],
    }


@contextmanager
def _translate_errors(action: str) -> Iterator[None]:
    try:
        yield
    except (psycopg2.OperationalError, psycopg2.InterfaceError, pool.PoolError) as exc:
        logger.error("Inventory store unreachable during %s: %s", action, exc)
        raise PersistenceUnavailableError(f"inventory store unreachable during {action}: {exc}") from exc
    except psycopg2.DatabaseError as exc:
        logger.error("Inventory %s failed: %s", action, exc)
        raise PersistenceError(f"inventory {action} failed: {exc}") from exc


class PostgisInventoryGateway:
    """Inventory stored in a PostGIS ``facilities`` table."""

    def __init__(
        self,
        dsn: Optional[str] = None,
        *,
        minconn: int = 1,
        maxconn: int = 5,
        connection_pool: Optional[pool.AbstractConnectionPool] = None,
    ) -> None:
        self._dsn = dsn
        self._minconn = minconn
        self._maxconn = maxconn
        self._pool = connection_pool
        self._pool_lock = threading.Lock()

    def _get_pool(self) -> pool.AbstractConnectionPool:
        with self._pool_lock:
            if self._pool is None:
                dsn = self._dsn or get_settings().database_url
                if not dsn:
                    raise PersistenceUnavailableError("DATABASE_URL is required for database connections")
                with _translate_errors("connect"):
                    self._pool = pool.ThreadedConnectionPool(
                        self._minconn,
                        self._maxconn,
                        dsn=dsn,
                        connect_timeout=10,
                    )
                logger.info("Database connection pool initialised")
            return self._pool

    @contextmanager
    def _connection(self):
        """Context manager yielding a pooled connection; rolls back on database errors."""
        pg_pool = self._get_pool()
        with _translate_errors("connect"):
            conn = pg_pool.getconn()
        try:
            yield conn
        except psycopg2.Error:
            if not conn.closed:
                conn.rollback()
            raise
        finally:
            pg_pool.putconn(conn)

    def ensure_schema(self) -> None:
        with _translate_errors("schema setup"):
            with self._connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(SCHEMA_SQL)
                conn.commit()
        logger.info("facilities schema ensured")

    def find_all(self) -> List[Dict[str, Any]]:
        with _translate_errors("read"):
            with self._connection() as conn:
                with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                    cur.execute(_SELECT_COLUMNS + " ORDER BY last_updated, id")
                    rows = cur.fetchall()
        return [_row_from_db(row) for row in rows]

    def find_by_id(self, record_id: str) -> Optional[Dict[str, Any]]:
        with _translate_errors("read"):
            with self._connection() as conn:
                with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                    cur.execute(_SELECT_COLUMNS + " WHERE id = %(id)s", {"id": record_id})
                    row = cur.fetchone()
        return _row_from_db(row) if row else None

    def save(self, row: Dict[str, Any]) -> None:
        """Persist an inventory row, performing an idempotent upsert on ``id``."""
        params = _prepare_params(row)
        if not params["id"] or params["lat"] is None or params["lng"] is None:
            raise PersistenceError("id and coordinates are required for upsert")

        with _translate_errors("write"):
            with self._connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(_UPSERT_FACILITY, params)
                conn.commit()
        logger.debug("Upserted facility %s", params["id"])

    @contextmanager
    def write_lock(self):
        """Hold a session-level advisory lock for the dedupe-and-persist step."""
        with self._connection() as conn:
            with _translate_errors("lock"):
                with conn.cursor() as cur:
                    cur.execute("SELECT pg_advisory_lock(%s)", (INGESTION_LOCK_KEY,))
            logger.debug("Acquired inventory advisory lock")
            try:
                yield
            finally:
                with _translate_errors("unlock"):
                    with conn.cursor() as cur:
                        cur.execute("SELECT pg_advisory_unlock(%s)", (INGESTION_LOCK_KEY,))
                    conn.commit()
                logger.debug("Released inventory advisory lock")

    def close(self) -> None:
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None


class InMemoryInventoryGateway:
    """Dictionary backed gateway for embedding and tests."""

    def __init__(self, rows: Optional[List[Dict[str, Any]]] = None) -> None:
        self._rows: Dict[str, Dict[str, Any]] = {}
        self._data_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self.saved: List[str] = []
        for row in rows or []:
            self._rows[str(row["id"])] = copy.deepcopy(row)

    def find_all(self) -> List[Dict[str, Any]]:
        with self._data_lock:
            return [copy.deepcopy(row) for row in self._rows.values()]

    def find_by_id(self, record_id: str) -> Optional[Dict[str, Any]]:
        with self._data_lock:
            row = self._rows.get(record_id)
            return copy.deepcopy(row) if row is not None else None

    def save(self, row: Dict[str, Any]) -> None:
        if not row.get("id"):
            raise PersistenceError("id is required for save")
        with self._data_lock:
            self._rows[str(row["id"])] = copy.deepcopy(row)
            self.saved.append(str(row["id"]))

    @contextmanager
    def write_lock(self):
        with self._write_lock:
            yield

    def __len__(self) -> int:
        with self._data_lock:
            return len(self._rows)
