"""SQLite storage for proxy state: schema, connection handling and retries."""

from __future__ import annotations

import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterator, Sequence, TypeVar

T = TypeVar("T")

BUSY_MESSAGES = frozenset(
    {
        "database is locked (5) (SQLITE_BUSY)",
        "database is locked",
        "database is busy",
    }
)
BUSY_TIMEOUT_SECONDS = 30.0

_TIMESTAMP = "DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP"
_COUNTER = "INTEGER NOT NULL DEFAULT 0"

_STATS_COUNTERS = (
    "total_connections",
    "active_connections",
    "active_game_servers",
    "total_game_servers",
    "total_bytes_up",
    "total_bytes_down",
    "total_messages_up",
    "total_messages_down",
)

# table name -> (columns as (name, declaration), extra table constraints)
_TABLES: dict[str, tuple[tuple[tuple[str, str], ...], tuple[str, ...]]] = {
    "game_servers": (
        (
            ("id", "INTEGER PRIMARY KEY AUTOINCREMENT"),
            ("host", "TEXT NOT NULL"),
            ("port", "TEXT NOT NULL"),
            ("capacity", "INTEGER NOT NULL"),
            ("current_load", _COUNTER),
            ("status", "TEXT NOT NULL DEFAULT 'starting'"),
            ("created_at", _TIMESTAMP),
            ("updated_at", _TIMESTAMP),
            ("last_ping", _TIMESTAMP),
        ),
        ("UNIQUE(host, port)",),
    ),
    "clients": (
        (
            ("id", "TEXT PRIMARY KEY"),
            ("game_server_id", "INTEGER"),
            ("status", "TEXT NOT NULL DEFAULT 'connected'"),
            ("connected_at", _TIMESTAMP),
            ("updated_at", _TIMESTAMP),
            ("last_activity", _TIMESTAMP),
            ("remote_addr", "TEXT NOT NULL"),
            ("authenticated", "BOOLEAN NOT NULL DEFAULT 0"),
        ),
        ("FOREIGN KEY (game_server_id) REFERENCES game_servers(id)",),
    ),
    "proxy_sessions": (
        (
            ("id", "INTEGER PRIMARY KEY AUTOINCREMENT"),
            ("client_id", "TEXT NOT NULL"),
            ("game_server_id", "INTEGER NOT NULL"),
            ("started_at", _TIMESTAMP),
            ("ended_at", "DATETIME"),
            ("status", "TEXT NOT NULL DEFAULT 'active'"),
            ("bytes_up", _COUNTER),
            ("bytes_down", _COUNTER),
            ("messages_up", _COUNTER),
            ("messages_down", _COUNTER),
        ),
        (
            "FOREIGN KEY (client_id) REFERENCES clients(id)",
            "FOREIGN KEY (game_server_id) REFERENCES game_servers(id)",
        ),
    ),
    "proxy_stats": (
        (
            ("id", "INTEGER PRIMARY KEY"),
            *((name, _COUNTER) for name in _STATS_COUNTERS),
            ("last_updated", _TIMESTAMP),
        ),
        (),
    ),
}

_INDEXED_COLUMNS = (
    ("clients", "status"),
    ("clients", "game_server_id"),
    ("game_servers", "status"),
    ("proxy_sessions", "client_id"),
    ("proxy_sessions", "game_server_id"),
    ("proxy_sessions", "status"),
)

_TOUCHED_COLUMNS = (
    ("game_servers", "updated_at"),
    ("clients", "updated_at"),
    ("proxy_stats", "last_updated"),
)


def _table_statement(name: str, columns, constraints) -> str:
    parts = [f"{column} {decl}" for column, decl in columns]
    parts.extend(constraints)
    body = ",\n    ".join(parts)
    return f"CREATE TABLE IF NOT EXISTS {name} (\n    {body}\n);"


def _index_statement(table: str, column: str) -> str:
    return f"CREATE INDEX IF NOT EXISTS idx_{table}_{column} ON {table}({column});"


def _touch_trigger_statement(table: str, column: str) -> str:
    return (
        f"CREATE TRIGGER IF NOT EXISTS update_{table}_{column}\n"
        f"AFTER UPDATE ON {table} FOR EACH ROW\n"
        f"BEGIN\n"
        f"    UPDATE {table} SET {column} = CURRENT_TIMESTAMP WHERE id = NEW.id;\n"
        f"END;"
    )


def _build_schema() -> str:
    statements = [
        _table_statement(name, columns, constraints)
        for name, (columns, constraints) in _TABLES.items()
    ]
    statements.append("INSERT OR IGNORE INTO proxy_stats (id) VALUES (1);")
    statements.extend(_index_statement(t, c) for t, c in _INDEXED_COLUMNS)
    statements.extend(_touch_trigger_statement(t, c) for t, c in _TOUCHED_COLUMNS)
    return "\n\n".join(statements) + "\n"


SCHEMA = _build_schema()

_CLEARED_TABLES = ("proxy_sessions", "clients", "game_servers")

_RESET_STATS = (
    "UPDATE proxy_stats SET "
    + ", ".join(f"{name} = 0" for name in _STATS_COUNTERS)
    + ", last_updated = CURRENT_TIMESTAMP WHERE id = 1"
)


def _adapt_datetime(value: datetime) -> str:
    return value.isoformat(" ")


def _convert_datetime(raw: bytes) -> datetime:
    return datetime.fromisoformat(raw.decode("utf-8"))


def _convert_boolean(raw: bytes) -> bool:
    return raw.strip().lower() not in (b"", b"0", b"false")


sqlite3.register_adapter(datetime, _adapt_datetime)
sqlite3.register_converter("DATETIME", _convert_datetime)
sqlite3.register_converter("BOOLEAN", _convert_boolean)


def retry_db_operation(
    operation: Callable[[], T], max_retries: int = 3, retry_delay: float = 0.05
) -> T | None:
    """Run ``operation``, retrying up to ``max_retries`` times while the database is busy.

    ``retry_delay`` is in seconds. Errors other than a busy database are raised at once.
    """
    for attempt in range(max_retries + 1):
        try:
            return operation()
        except Exception as err:
            if attempt < max_retries and str(err) in BUSY_MESSAGES:
                time.sleep(retry_delay)
                continue
            raise
    return None


class Database:
    """A shared SQLite connection holding the proxy schema."""

    def __init__(self, path: str | Path) -> None:
        self.path = str(path)
        self._lock = threading.RLock()
        try:
            self._conn = sqlite3.connect(
                self.path,
                timeout=BUSY_TIMEOUT_SECONDS,
                detect_types=sqlite3.PARSE_DECLTYPES,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.Error as err:
            raise sqlite3.OperationalError(f"failed to open database: {err}") from err
        self._conn.row_factory = sqlite3.Row

        try:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            self._conn.execute(f"PRAGMA busy_timeout={int(BUSY_TIMEOUT_SECONDS * 1000)}")
            self.health_check()
        except sqlite3.Error as err:
            self._conn.close()
            raise sqlite3.OperationalError(f"failed to ping database: {err}") from err

        try:
            self._conn.executescript(SCHEMA)
        except sqlite3.Error as err:
            self._conn.close()
            raise sqlite3.OperationalError(
                f"failed to initialize schema: failed to execute schema: {err}"
            ) from err

    def __enter__(self) -> Database:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def execute(self, query: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        """Run a statement and return its cursor (for ``lastrowid`` and ``rowcount``)."""
        with self._lock:
            return self._conn.execute(query, tuple(params))

    def query_one(self, query: str, params: Sequence[Any] = ()) -> sqlite3.Row | None:
        """Return the first row of a query, or None when there is none."""
        with self._lock:
            return self._conn.execute(query, tuple(params)).fetchone()

    def query_all(self, query: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        """Return every row of a query."""
        with self._lock:
            return self._conn.execute(query, tuple(params)).fetchall()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed statements in one transaction, rolled back on error."""
        with self._lock:
            self._conn.execute("BEGIN")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def health_check(self) -> None:
        """Raise if the database cannot be reached."""
        with self._lock:
            self._conn.execute("SELECT 1").fetchone()

    def clear_all(self) -> None:
        """Delete every client, game server and session and reset the statistics."""
        with self.transaction() as conn:
            for table in _CLEARED_TABLES:
                try:
                    conn.execute(f"DELETE FROM {table}")
                except sqlite3.Error as err:
                    raise sqlite3.OperationalError(
                        f"failed to clear table {table}: {err}"
                    ) from err
            try:
                conn.execute(_RESET_STATS)
            except sqlite3.Error as err:
                raise sqlite3.OperationalError(f"failed to reset stats: {err}") from err