"""Persistent subscriber store backed by SQLite or PostgreSQL."""
from __future__ import annotations

import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Tuple
from urllib.parse import urlparse

import psycopg2
from psycopg2 import extras as pg_extras
from psycopg2.pool import SimpleConnectionPool

LOGGER = logging.getLogger("weather_bot.subscriptions")
LOGGER.addHandler(logging.NullHandler())

Subscriber = Dict[str, Any]

_PG_POOL: SimpleConnectionPool | None = None
_PG_SCHEMA_READY = False
_SQLITE_SCHEMA_READY: dict[str, bool] = {}
_BACKEND_LOGGED = False

_EXPECTED_SUBSCRIBER_COLUMNS = (
    "telegram_id",
    "is_subscribed",
    "preferred_city",
    "subscribed_at",
    "updated_at",
)

_SQLITE_COLUMN_TYPES: Dict[str, str] = {
    "is_subscribed": "INTEGER NOT NULL DEFAULT 0",
    "preferred_city": "TEXT",
    "subscribed_at": "TEXT",
    "updated_at": "TEXT",
}

_POSTGRES_COLUMN_TYPES: Dict[str, str] = {
    "id": "SERIAL",
    "is_subscribed": "BOOLEAN NOT NULL DEFAULT FALSE",
    "preferred_city": "TEXT",
    "subscribed_at": "TIMESTAMPTZ",
    "updated_at": "TIMESTAMPTZ",
}

_SUBSCRIBER_FIELDS = "telegram_id, is_subscribed, preferred_city, subscribed_at, updated_at"

_SQL_ERRORS: tuple[type[Exception], ...] = (sqlite3.Error, psycopg2.Error)


def _db_url() -> str:
    # Read per call; .env may be loaded after this module is imported.
    return os.getenv("DB_URL", "").strip()


def _use_postgres() -> bool:
    return bool(_db_url())


class SubscriberStoreError(RuntimeError):
    """Raised when the subscriber database cannot complete an operation."""


def _default_db_path() -> Path:
    env_override = os.getenv("SUBSCRIBERS_DB_PATH") or os.getenv("SUBSCRIBERS_PATH")
    if env_override:
        return Path(env_override).expanduser()
    return Path(__file__).with_name("subscribers.sqlite3")


def _resolve_path(path: Path | None = None) -> Path:
    if path:
        return Path(path).expanduser()
    return _default_db_path()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _normalise_timestamp(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, str):
        cleaned = value.strip()
        return cleaned or None
    return None


def _normalise_telegram_id(telegram_id: int | str) -> str:
    telegram_id_str = str(telegram_id).strip()
    if not telegram_id_str:
        raise ValueError("telegram_id is required")
    return telegram_id_str


def _mask_dsn(dsn: str) -> str:
    try:
        parsed = urlparse(dsn)
    except ValueError:
        return "postgresql://***"

    netloc = parsed.hostname or "localhost"
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    db = parsed.path.lstrip("/") or "postgres"
    return f"postgresql://{netloc}/{db}"


def _select_columns() -> str:
    # SQLite tables from older releases have no ``id`` column; ``rowid`` is
    # an alias of ``id`` on tables created by this module.
    id_column = "id" if _use_postgres() else "rowid AS id"
    return f"{id_column}, {_SUBSCRIBER_FIELDS}"


def _sql(query: str) -> str:
    if _use_postgres():
        return query.replace("?", "%s")
    return query


@contextmanager
def _connect(path: Path | None = None) -> Iterator[Any]:
    """Yield a connection inside a transaction.

    Driver errors are re-raised as :class:`SubscriberStoreError` so callers
    only deal with one failure type regardless of the backend.
    """

    global _PG_POOL, _PG_SCHEMA_READY, _BACKEND_LOGGED

    if _use_postgres():
        try:
            if _PG_POOL is None:
                max_conn = max(4, int(os.getenv("DB_POOL_MAX", "10")))
                _PG_POOL = SimpleConnectionPool(1, max_conn, _db_url())
            conn = _PG_POOL.getconn()
        except _SQL_ERRORS as exc:
            raise SubscriberStoreError(f"Cannot connect to {_mask_dsn(_db_url())}: {exc}") from exc
        try:
            if not _BACKEND_LOGGED:
                LOGGER.info("Using PostgreSQL backend at %s", _mask_dsn(_db_url()))
                _BACKEND_LOGGED = True
            if not _PG_SCHEMA_READY:
                _ensure_schema_postgres(conn)
                _PG_SCHEMA_READY = True
            yield conn
            conn.commit()
        except _SQL_ERRORS as exc:
            conn.rollback()
            raise SubscriberStoreError(str(exc)) from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            if _PG_POOL:
                _PG_POOL.putconn(conn)
    else:
        db_path = _resolve_path(path)
        key = str(db_path)
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(db_path)
        except (OSError, sqlite3.Error) as exc:
            raise SubscriberStoreError(f"Cannot open {db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            if not _BACKEND_LOGGED:
                LOGGER.info("Using SQLite backend at %s", db_path)
                _BACKEND_LOGGED = True
            if not _SQLITE_SCHEMA_READY.get(key):
                _ensure_schema_sqlite(conn)
                _SQLITE_SCHEMA_READY[key] = True
            yield conn
            conn.commit()
        except _SQL_ERRORS as exc:
            conn.rollback()
            raise SubscriberStoreError(str(exc)) from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()


def _ensure_schema_sqlite(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS subscribers (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            telegram_id TEXT NOT NULL UNIQUE,
            is_subscribed INTEGER NOT NULL DEFAULT 0,
            preferred_city TEXT,
            subscribed_at TEXT,
            updated_at TEXT
        )
        """
    )

    info_rows = conn.execute("PRAGMA table_info('subscribers')").fetchall()
    existing_columns = {row["name"] for row in info_rows}

    for column, ddl_type in _SQLITE_COLUMN_TYPES.items():
        if column in existing_columns:
            continue
        LOGGER.warning("Adding missing column %s to subscribers table", column)
        conn.execute(f"ALTER TABLE subscribers ADD COLUMN {column} {ddl_type}")
        existing_columns.add(column)
        if column in {"subscribed_at", "updated_at"}:
            conn.execute(
                f"UPDATE subscribers SET {column} = ? WHERE {column} IS NULL",
                (_now_iso(),),
            )

    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_subscribers_telegram_id
        ON subscribers(telegram_id)
        """
    )


def _ensure_schema_postgres(conn: Any) -> None:
    statements = [
        """
        CREATE TABLE IF NOT EXISTS subscribers (
            id SERIAL PRIMARY KEY,
            telegram_id TEXT NOT NULL UNIQUE,
            is_subscribed BOOLEAN NOT NULL DEFAULT FALSE,
            preferred_city TEXT,
            subscribed_at TIMESTAMPTZ,
            updated_at TIMESTAMPTZ
        )
        """,
    ]

    with conn.cursor() as cur:
        for stmt in statements:
            cur.execute(stmt)

    _postgres_sync_subscriber_columns(conn)

    with conn.cursor() as cur:
        cur.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_subscribers_telegram_id
            ON subscribers(telegram_id)
            """
        )


def _postgres_fetch_columns(conn: Any) -> Dict[str, str]:
    query = """
        SELECT column_name, data_type
        FROM information_schema.columns
        WHERE table_schema = current_schema()
          AND table_name = 'subscribers'
    """
    with conn.cursor() as cur:
        cur.execute(query)
        rows = cur.fetchall()
    columns: Dict[str, str] = {}
    for name, dtype in rows:
        if isinstance(name, str):
            columns[name] = dtype.lower() if isinstance(dtype, str) else str(dtype)
    return columns


def _postgres_sync_subscriber_columns(conn: Any) -> None:
    columns = _postgres_fetch_columns(conn)

    additions: List[str] = []
    for column, ddl_type in _POSTGRES_COLUMN_TYPES.items():
        if column not in columns:
            additions.append(
                f"ALTER TABLE subscribers ADD COLUMN IF NOT EXISTS {column} {ddl_type}"
            )

    if additions:
        with conn.cursor() as cur:
            for ddl in additions:
                cur.execute(ddl)
                LOGGER.info("Applied migration step: %s", ddl)


def _execute(conn: Any, query: str, params: Tuple[Any, ...] = (), *, fetchone: bool = False, fetchall: bool = False):
    statement = _sql(query)
    if _use_postgres():
        with conn.cursor(cursor_factory=pg_extras.RealDictCursor) as cur:
            cur.execute(statement, params)
            if fetchone:
                return cur.fetchone()
            if fetchall:
                return cur.fetchall()
            return cur.rowcount
    cursor = conn.execute(statement, params)
    try:
        if fetchone:
            return cursor.fetchone()
        if fetchall:
            return cursor.fetchall()
        return cursor.rowcount
    finally:
        cursor.close()


def _row_to_subscriber(row: Any) -> Subscriber:
    city = row["preferred_city"]
    return {
        "id": int(row["id"]),
        "telegram_id": str(row["telegram_id"]),
        "is_subscribed": bool(row["is_subscribed"]),
        "preferred_city": city if city else None,
        "subscribed_at": _normalise_timestamp(row["subscribed_at"]),
        "updated_at": _normalise_timestamp(row["updated_at"]),
    }


def _fetch_subscriber(conn: Any, telegram_id_str: str) -> Subscriber | None:
    row = _execute(
        conn,
        f"SELECT {_select_columns()} FROM subscribers WHERE telegram_id = ?",
        (telegram_id_str,),
        fetchone=True,
    )
    return _row_to_subscriber(row) if row else None


def get_subscriber(telegram_id: int | str, *, path: Path | None = None) -> Subscriber | None:
    telegram_id_str = str(telegram_id).strip()
    if not telegram_id_str:
        return None

    with _connect(path) as conn:
        return _fetch_subscriber(conn, telegram_id_str)


def load_subscribers(path: Path | None = None) -> List[Subscriber]:
    with _connect(path) as conn:
        rows = _execute(
            conn,
            f"SELECT {_select_columns()} FROM subscribers ORDER BY id",
            fetchall=True,
        )
    return [_row_to_subscriber(row) for row in rows]


def subscribe_user(telegram_id: int | str, *, path: Path | None = None) -> Tuple[bool, Subscriber]:
    """Subscribe ``telegram_id``, creating the record on first use.

    Returns ``(changed, subscriber)`` where ``changed`` is ``False`` when the
    record already existed with the subscription flag set. The insert relies
    on the unique ``telegram_id`` constraint so two interleaved calls never
    produce two rows.
    """

    telegram_id_str = _normalise_telegram_id(telegram_id)
    backend = "postgresql" if _use_postgres() else "sqlite"
    now = _now_iso()

    with _connect(path) as conn:
        inserted = _execute(
            conn,
            """
            INSERT INTO subscribers (telegram_id, is_subscribed, preferred_city, subscribed_at, updated_at)
            VALUES (?, ?, NULL, ?, ?)
            ON CONFLICT (telegram_id) DO NOTHING
            """,
            (telegram_id_str, True, now, now),
        )
        if inserted:
            changed = True
            action = "insert"
        else:
            updated = _execute(
                conn,
                """
                UPDATE subscribers
                SET is_subscribed = ?, subscribed_at = ?, updated_at = ?
                WHERE telegram_id = ? AND is_subscribed = ?
                """,
                (True, now, now, telegram_id_str, False),
            )
            changed = bool(updated)
            action = "update" if changed else "noop"
        subscriber = _fetch_subscriber(conn, telegram_id_str)

    if subscriber is None:  # pragma: no cover - guarded by the insert above
        raise SubscriberStoreError(f"Subscriber {telegram_id_str} vanished after upsert")
    LOGGER.info(
        "Subscribe backend=%s action=%s telegram_id=%s",
        backend,
        action,
        telegram_id_str,
    )
    return changed, subscriber


def unsubscribe_user(
    telegram_id: int | str, *, path: Path | None = None
) -> Tuple[bool, Subscriber | None]:
    """Clear the subscription flag; never creates a record.

    Returns ``(False, None)`` for an unknown id and ``(False, subscriber)``
    when the record was already unsubscribed.
    """

    telegram_id_str = _normalise_telegram_id(telegram_id)
    with _connect(path) as conn:
        updated = _execute(
            conn,
            """
            UPDATE subscribers
            SET is_subscribed = ?, updated_at = ?
            WHERE telegram_id = ? AND is_subscribed = ?
            """,
            (False, _now_iso(), telegram_id_str, True),
        )
        subscriber = _fetch_subscriber(conn, telegram_id_str)
    LOGGER.info(
        "Unsubscribe telegram_id=%s changed=%s known=%s",
        telegram_id_str,
        bool(updated),
        subscriber is not None,
    )
    return bool(updated), subscriber


def set_preferred_city(
    telegram_id: int | str, city: str, *, path: Path | None = None
) -> Tuple[bool, Subscriber | None]:
    """Overwrite the preferred city of an existing subscriber.

    Unknown ids are left alone (no record is created) and yield
    ``(False, None)``.
    """

    telegram_id_str = _normalise_telegram_id(telegram_id)
    city_value = (city or "").strip()
    if not city_value:
        raise ValueError("city is required")

    with _connect(path) as conn:
        updated = _execute(
            conn,
            "UPDATE subscribers SET preferred_city = ?, updated_at = ? WHERE telegram_id = ?",
            (city_value, _now_iso(), telegram_id_str),
        )
        subscriber = _fetch_subscriber(conn, telegram_id_str) if updated else None
    LOGGER.info(
        "Set preferred city telegram_id=%s known=%s",
        telegram_id_str,
        subscriber is not None,
    )
    return bool(updated), subscriber


def load_eligible_subscribers(path: Path | None = None) -> List[Subscriber]:
    """Return subscribed records that have a non-empty preferred city."""

    with _connect(path) as conn:
        rows = _execute(
            conn,
            f"""
            SELECT {_select_columns()} FROM subscribers
            WHERE is_subscribed = ?
              AND preferred_city IS NOT NULL
              AND TRIM(preferred_city) <> ''
            ORDER BY id
            """,
            (True,),
            fetchall=True,
        )
    return [_row_to_subscriber(row) for row in rows]


def count_subscribers(*, path: Path | None = None, only_active: bool = False) -> int:
    query = "SELECT COUNT(1) AS total FROM subscribers"
    params: Tuple[Any, ...] = ()
    if only_active:
        query += " WHERE is_subscribed = ?"
        params = (True,)

    with _connect(path) as conn:
        row = _execute(conn, query, params, fetchone=True)
    if not row:
        return 0
    return int(row["total"])


def ensure_database_ready(*, path: Path | None = None) -> None:
    with _connect(path):
        pass


def describe_backend(*, path: Path | None = None) -> str:
    if _use_postgres():
        return _mask_dsn(_db_url())
    db_path = _resolve_path(path)
    return str(db_path)


def is_postgres_backend() -> bool:
    return _use_postgres()


def expected_subscriber_columns() -> tuple[str, ...]:
    return _EXPECTED_SUBSCRIBER_COLUMNS


def subscriber_columns(*, path: Path | None = None) -> Dict[str, str]:
    if _use_postgres():
        with _connect(path) as conn:
            return _postgres_fetch_columns(conn)
    with _connect(path) as conn:
        rows = conn.execute("PRAGMA table_info('subscribers')").fetchall()
        return {row["name"]: row["type"] or "" for row in rows}
