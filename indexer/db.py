# indexer/db.py
"""
Tezos Delegation Indexer - Checkpoint Store

Durable table of ingested delegations, keyed by (timestamp, delegator). The
same table is the source of the ingestion watermark: the maximum stored
timestamp, re-read on every worker cycle.

Two engines are supported, selected by DATABASE_URL:
- sqlite:///path/to/file.db   embedded SQLite, one connection per operation
- postgresql://...            PostgreSQL via psycopg3 + psycopg_pool

All methods are blocking. The ingestion worker calls them through
asyncio.to_thread; FastAPI runs the sync route handlers in its threadpool.
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Sequence
from urllib.parse import urlparse

import psycopg
from psycopg_pool import ConnectionPool

from .config import DEFAULT_START_TIMESTAMP
from .core.errors import StorageInitError, StorageQueryError, StorageWriteError
from .core.logging import get_logger
from .models import DelegationRecord

logger = get_logger(__name__)

TABLE_NAME = "delegations"
DEFAULT_TIMEOUT_SECONDS = 10.0
POOL_MAX_SIZE = 4

SQLITE_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
    "timestamp" TEXT NOT NULL,
    amount INTEGER NOT NULL,
    delegator TEXT NOT NULL,
    level INTEGER NOT NULL,
    PRIMARY KEY ("timestamp", delegator)
)
"""

# COLLATE "C" keeps ISO-8601 strings in byte order for the year range scan.
POSTGRES_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
    "timestamp" TEXT COLLATE "C" NOT NULL,
    amount BIGINT NOT NULL,
    delegator TEXT NOT NULL,
    level BIGINT NOT NULL,
    PRIMARY KEY ("timestamp", delegator)
)
"""


# ---------------------------------------------------------------------------
# Engines
# ---------------------------------------------------------------------------


class _SqliteEngine:
    """Embedded SQLite file. Each operation opens and closes its own connection."""

    name = "sqlite"
    placeholder = "?"
    schema = SQLITE_SCHEMA
    errors: tuple[type[BaseException], ...] = (sqlite3.Error,)

    def __init__(self, path: str, timeout: float) -> None:
        self.path = path
        self.timeout = timeout

    def open(self) -> None:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")

    @contextmanager
    def connection(self) -> Iterator[Any]:
        conn = sqlite3.connect(self.path, timeout=self.timeout)
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def close(self) -> None:
        return None

    def describe(self) -> str:
        return f"sqlite:{self.path}"


class _PostgresEngine:
    """PostgreSQL through a small psycopg connection pool."""

    name = "postgresql"
    placeholder = "%s"
    schema = POSTGRES_SCHEMA
    errors: tuple[type[BaseException], ...] = (psycopg.Error,)

    def __init__(self, dsn: str, timeout: float) -> None:
        self.dsn = dsn
        self.timeout = timeout
        self._pool: ConnectionPool | None = None

    def open(self) -> None:
        if self._pool is not None:
            return
        pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=POOL_MAX_SIZE,
            timeout=self.timeout,
            kwargs={"connect_timeout": max(1, int(self.timeout))},
            open=False,
        )
        # PoolTimeout is a psycopg.OperationalError, so callers see one error family
        try:
            pool.open(wait=True, timeout=self.timeout)
        except psycopg.Error:
            pool.close()
            raise
        self._pool = pool

    @contextmanager
    def connection(self) -> Iterator[Any]:
        if self._pool is None:
            raise psycopg.OperationalError("connection pool is not open; call initialize() first")
        with self._pool.connection() as conn:
            yield conn

    def close(self) -> None:
        if self._pool is not None:
            self._pool.close()
            self._pool = None

    def describe(self) -> str:
        parsed = urlparse(self.dsn)
        port = parsed.port or 5432
        dbname = parsed.path.lstrip("/") or "postgres"
        return f"postgresql://{parsed.hostname}:{port}/{dbname}"


def _resolve_engine(database_url: str, timeout: float) -> _SqliteEngine | _PostgresEngine:
    """Pick the engine for a DATABASE_URL. Unknown schemes are a startup error."""
    scheme, sep, rest = database_url.partition("://")
    if not sep:
        raise StorageInitError(f"Invalid database URL (missing scheme): {database_url!r}")
    scheme = scheme.lower()

    if scheme == "sqlite":
        # sqlite:///relative.db -> relative.db ; sqlite:////abs/path.db -> /abs/path.db
        path = rest[1:] if rest.startswith("/") else rest
        if not path or path == ":memory:":
            raise StorageInitError(
                "SQLite store needs a file path; in-memory databases are not shared "
                "between connections"
            )
        return _SqliteEngine(path, timeout)

    if scheme in ("postgresql", "postgres"):
        return _PostgresEngine(database_url, timeout)

    raise StorageInitError(f"Unsupported database scheme {scheme!r} in DATABASE_URL")


def _year_bounds(year: int | str) -> tuple[str, str]:
    """Half-open ISO-8601 string range covering one calendar year."""
    try:
        value = int(year)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"year must be a four-digit number, got {year!r}") from exc
    if not 0 < value < 9999:
        raise ValueError(f"year must be a four-digit number, got {year!r}")
    return f"{value:04d}-01-01", f"{value + 1:04d}-01-01"


# ---------------------------------------------------------------------------
# Checkpoint Store
# ---------------------------------------------------------------------------


class CheckpointStore:
    """
    Append-only delegation table plus the ingestion watermark.

    Usage:
        store = CheckpointStore("sqlite:///./delegations.db")
        store.initialize()
        store.upsert(record)
        watermark = store.latest_timestamp()
        rows = store.query(year=2023)
    """

    def __init__(
        self,
        database_url: str,
        *,
        default_watermark: str = DEFAULT_START_TIMESTAMP,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.default_watermark = default_watermark
        self._engine = _resolve_engine(database_url, timeout)
        self._initialized = False

    @property
    def engine_name(self) -> str:
        return self._engine.name

    @property
    def initialized(self) -> bool:
        return self._initialized

    def _sql(self, statement: str) -> str:
        return statement.replace("?", self._engine.placeholder)

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    def initialize(self) -> None:
        """
        Open the engine and create the delegations table if it does not exist.

        Idempotent. Raises StorageInitError when the engine cannot be opened or
        the schema cannot be created.
        """
        target = self._engine.describe()
        try:
            self._engine.open()
            with self._engine.connection() as conn:
                conn.execute(self._engine.schema)
        except (OSError, *self._engine.errors) as exc:
            logger.error(f"Checkpoint store initialization failed for {target}: {exc}")
            raise StorageInitError(f"Cannot initialize checkpoint store at {target}: {exc}") from exc

        self._initialized = True
        logger.info(f"Checkpoint store ready ({target})")

    def close(self) -> None:
        """Release pooled connections. Safe to call more than once."""
        self._engine.close()
        self._initialized = False

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def upsert(self, record: DelegationRecord) -> bool:
        """
        Insert the record unless (timestamp, delegator) is already stored.

        Returns True when a row was inserted and False for a duplicate.
        Duplicates are never an error; engine failures raise StorageWriteError.
        """
        statement = self._sql(
            f'INSERT INTO {TABLE_NAME} ("timestamp", amount, delegator, level) '
            'VALUES (?, ?, ?, ?) ON CONFLICT ("timestamp", delegator) DO NOTHING'
        )
        params = (record.timestamp, record.amount, record.delegator, record.level)
        try:
            with self._engine.connection() as conn:
                cursor = conn.execute(statement, params)
                inserted = cursor.rowcount == 1
        except self._engine.errors as exc:
            raise StorageWriteError(
                f"Failed to store delegation {record.timestamp} / {record.delegator}: {exc}"
            ) from exc
        return inserted

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def latest_timestamp(self) -> str:
        """
        Return the newest stored timestamp, or the default watermark when empty.

        Never raises: storage errors are logged and the default is returned so
        ingestion can continue from a safe lower bound.
        """
        try:
            with self._engine.connection() as conn:
                row = conn.execute(f'SELECT MAX("timestamp") FROM {TABLE_NAME}').fetchone()
        except self._engine.errors as exc:
            logger.error(
                f"Error reading latest timestamp, falling back to {self.default_watermark}: {exc}",
                extra={"watermark": self.default_watermark},
            )
            return self.default_watermark

        if row is None or row[0] is None:
            return self.default_watermark
        return str(row[0])

    def query(self, year: int | str | None = None) -> list[DelegationRecord]:
        """
        Return stored delegations ordered by timestamp, newest first.

        Args:
            year: Optional calendar year; only events inside it are returned.

        Raises:
            ValueError: If year is not a four-digit number
            StorageQueryError: If the read fails
        """
        columns = '"timestamp", amount, delegator, level'
        order = 'ORDER BY "timestamp" DESC, delegator ASC'
        params: Sequence[Any]

        if year is None:
            statement = f"SELECT {columns} FROM {TABLE_NAME} {order}"
            params = ()
        else:
            statement = self._sql(
                f'SELECT {columns} FROM {TABLE_NAME} '
                f'WHERE "timestamp" >= ? AND "timestamp" < ? {order}'
            )
            params = _year_bounds(year)

        try:
            with self._engine.connection() as conn:
                rows = conn.execute(statement, params).fetchall()
        except self._engine.errors as exc:
            raise StorageQueryError(str(exc)) from exc

        return [
            DelegationRecord(timestamp=row[0], amount=row[1], delegator=row[2], level=row[3])
            for row in rows
        ]

    def count(self) -> int:
        """Number of stored delegations. Raises StorageQueryError."""
        try:
            with self._engine.connection() as conn:
                row = conn.execute(f"SELECT COUNT(*) FROM {TABLE_NAME}").fetchone()
        except self._engine.errors as exc:
            raise StorageQueryError(str(exc)) from exc
        return int(row[0]) if row else 0
