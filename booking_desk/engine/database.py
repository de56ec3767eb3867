from __future__ import annotations

import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, time, timezone
from typing import Any, Iterator, Optional, Sequence

from booking_desk.config import DatabaseBackend, DatabaseConfig
from booking_desk.db import schema
from booking_desk.db.types import ADMIN_LOCK_NAMESPACE, DatabaseInterface, Transaction

logger = logging.getLogger(__name__)


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _adapt_sqlite_param(value: Any) -> Any:
    if isinstance(value, datetime):
        return _to_utc(value).isoformat(timespec="microseconds")
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (date, time)):
        return value.isoformat()
    return value


def _is_timestamp_column(name: str) -> bool:
    return name.endswith("_at") or name.endswith("_utc")


def _normalize_row(row: dict[str, Any]) -> dict[str, Any]:
    for key, value in row.items():
        if value is None:
            continue
        if _is_timestamp_column(key):
            if isinstance(value, str):
                row[key] = _to_utc(datetime.fromisoformat(value))
            elif isinstance(value, datetime):
                row[key] = _to_utc(value)
        elif key.startswith("is_") and isinstance(value, int):
            row[key] = bool(value)
    return row


class SqliteTransaction(Transaction):
    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    @staticmethod
    def _prepare(sql: str, params: Sequence[Any]) -> tuple[str, list[Any]]:
        return sql.replace("%s", "?"), [_adapt_sqlite_param(p) for p in params]

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        query, args = self._prepare(sql, params)
        cursor = self._conn.execute(query, args)
        return cursor.rowcount

    def fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[dict[str, Any]]:
        query, args = self._prepare(sql, params)
        row = self._conn.execute(query, args).fetchone()
        return _normalize_row(dict(row)) if row else None

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        query, args = self._prepare(sql, params)
        return [_normalize_row(dict(row)) for row in self._conn.execute(query, args)]


class SqliteDatabase(DatabaseInterface):
    """File-backed store for single-host deployments and tests.

    Every transaction starts with ``BEGIN IMMEDIATE``, so writers are serialised
    across threads and processes sharing the file; ``lock_key`` adds nothing.
    """

    def __init__(self, db_path: str = "config/booking_desk.db", busy_timeout_ms: int = 30000):
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.busy_timeout_ms / 1000,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout={self.busy_timeout_ms}")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def initialize(self) -> None:
        os.makedirs(os.path.dirname(self.db_path) or ".", exist_ok=True)
        conn = self._get_connection()
        try:
            conn.executescript("PRAGMA journal_mode=WAL; PRAGMA synchronous=NORMAL;")
            conn.executescript(schema.SQLITE_SCHEMA)
        finally:
            conn.close()
        logger.info(f"SQLite database initialized at {self.db_path}")

    def close(self) -> None:
        pass

    @contextmanager
    def transaction(
        self, lock_key: Optional[int] = None, namespace: int = ADMIN_LOCK_NAMESPACE
    ) -> Iterator[Transaction]:
        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield SqliteTransaction(conn)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()


class PostgresTransaction(Transaction):
    def __init__(self, cursor: Any):
        self._cur = cursor

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        self._cur.execute(sql, list(params))
        return self._cur.rowcount

    def fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[dict[str, Any]]:
        self._cur.execute(sql, list(params))
        row = self._cur.fetchone()
        return _normalize_row(dict(row)) if row else None

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        self._cur.execute(sql, list(params))
        return [_normalize_row(dict(row)) for row in self._cur.fetchall()]


class PostgresDatabase(DatabaseInterface):
    def __init__(
        self,
        host: str = "localhost",
        port: int = 5432,
        database: str = "booking_desk",
        user: str = "booking_desk",
        password: str = "",
        ssl_mode: str = "prefer",
        min_size: int = 1,
        max_size: int = 10,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.ssl_mode = ssl_mode
        self.min_size = min_size
        self.max_size = max_size
        self._pool: Any = None

    def _get_connection_string(self) -> str:
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}?sslmode={self.ssl_mode}"

    def initialize(self) -> None:
        try:
            from psycopg.rows import dict_row
            from psycopg_pool import ConnectionPool
        except ImportError:
            raise ImportError(
                "PostgreSQL support requires psycopg[binary] and psycopg_pool. Install with: pip install 'psycopg[binary]' psycopg_pool"
            )

        self._pool = ConnectionPool(
            self._get_connection_string(),
            min_size=self.min_size,
            max_size=self.max_size,
            kwargs={"row_factory": dict_row},
        )

        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(schema.POSTGRES_SCHEMA)
            conn.commit()
        logger.info(f"PostgreSQL database initialized at {self.host}:{self.port}/{self.database}")

    @contextmanager
    def connection(self) -> Iterator[Any]:
        if not self._pool:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        with self._pool.connection() as conn:
            yield conn

    def close(self) -> None:
        if self._pool:
            self._pool.close()
            self._pool = None

    @contextmanager
    def transaction(
        self, lock_key: Optional[int] = None, namespace: int = ADMIN_LOCK_NAMESPACE
    ) -> Iterator[Transaction]:
        with self.connection() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    if lock_key is not None:
                        cur.execute(
                            "SELECT pg_advisory_xact_lock(%s, %s)",
                            (namespace, lock_key),
                        )
                    yield PostgresTransaction(cur)


def create_database(config: DatabaseConfig) -> DatabaseInterface:
    if config.backend == DatabaseBackend.POSTGRES:
        pg = config.postgres
        return PostgresDatabase(
            host=pg.host,
            port=pg.port,
            database=pg.database,
            user=pg.user,
            password=pg.password,
            ssl_mode=pg.ssl_mode,
        )
    return SqliteDatabase(config.sqlite_path)
