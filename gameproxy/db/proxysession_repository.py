"""Persistence of proxy sessions between clients and game servers."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator

from .database import Database
from .models import ProxySessionRecord

_COLUMNS = (
    "id, client_id, game_server_id, started_at, ended_at, status, "
    "bytes_up, bytes_down, messages_up, messages_down"
)

_TRAFFIC_QUERY = """SELECT
    COALESCE(SUM(bytes_up), 0),
    COALESCE(SUM(bytes_down), 0),
    COALESCE(SUM(messages_up), 0),
    COALESCE(SUM(messages_down), 0)
    FROM proxy_sessions"""


@contextmanager
def _reporting(action: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as err:
        raise sqlite3.DatabaseError(f"failed to {action}: {err}") from err


def _record(row: sqlite3.Row) -> ProxySessionRecord:
    return ProxySessionRecord(**dict(row))


class ProxySessionRepository:
    """Reads and writes rows of the ``proxy_sessions`` table."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def create(self, session: ProxySessionRecord) -> None:
        """Insert ``session`` and fill in its new id and start time."""
        query = (
            "INSERT INTO proxy_sessions (client_id, game_server_id, started_at, status, "
            "bytes_up, bytes_down, messages_up, messages_down) VALUES (?, ?, ?, ?, ?, ?, ?, ?)"
        )
        now = datetime.now()
        with _reporting("create proxy session"):
            cursor = self._db.execute(
                query,
                (
                    session.client_id,
                    session.game_server_id,
                    now,
                    session.status,
                    session.bytes_up,
                    session.bytes_down,
                    session.messages_up,
                    session.messages_down,
                ),
            )
        if cursor.lastrowid is None:
            raise sqlite3.DatabaseError("failed to get last insert id")

        session.id = cursor.lastrowid
        session.started_at = now

    def _select_one(self, action: str, query: str, params=()) -> ProxySessionRecord | None:
        with _reporting(action):
            row = self._db.query_one(query, params)
        return None if row is None else _record(row)

    def _select_many(self, action: str, query: str, params=()) -> list[ProxySessionRecord]:
        with _reporting(action):
            rows = self._db.query_all(query, params)
        return [_record(row) for row in rows]

    def get_by_id(self, session_id: int) -> ProxySessionRecord | None:
        return self._select_one(
            "get proxy session",
            f"SELECT {_COLUMNS} FROM proxy_sessions WHERE id = ?",
            (session_id,),
        )

    def get_by_client_id(self, client_id: str) -> ProxySessionRecord | None:
        """Return the most recently started active session of a client, if any."""
        return self._select_one(
            "get proxy session by client",
            f"SELECT {_COLUMNS} FROM proxy_sessions WHERE client_id = ? AND status = 'active' "
            "ORDER BY started_at DESC LIMIT 1",
            (client_id,),
        )

    def get_by_game_server_id(self, game_server_id: int) -> list[ProxySessionRecord]:
        """Return all sessions on a game server, newest first."""
        return self._select_many(
            "query proxy sessions by game server",
            f"SELECT {_COLUMNS} FROM proxy_sessions WHERE game_server_id = ? "
            "ORDER BY started_at DESC",
            (game_server_id,),
        )

    def get_active(self) -> list[ProxySessionRecord]:
        """Return all active sessions, newest first."""
        return self._select_many(
            "query active proxy sessions",
            f"SELECT {_COLUMNS} FROM proxy_sessions WHERE status = 'active' "
            "ORDER BY started_at DESC",
        )

    def update(self, session: ProxySessionRecord) -> None:
        """Store the status and traffic counters of ``session``."""
        query = (
            "UPDATE proxy_sessions SET status = ?, bytes_up = ?, bytes_down = ?, "
            "messages_up = ?, messages_down = ? WHERE id = ?"
        )
        with _reporting("update proxy session"):
            self._db.execute(
                query,
                (
                    session.status,
                    session.bytes_up,
                    session.bytes_down,
                    session.messages_up,
                    session.messages_down,
                    session.id,
                ),
            )

    def end(self, session_id: int, status: str) -> None:
        """Set the final status of a session and stamp its end time."""
        with _reporting("end proxy session"):
            self._db.execute(
                "UPDATE proxy_sessions SET status = ?, ended_at = ? WHERE id = ?",
                (status, datetime.now(), session_id),
            )

    def update_traffic(
        self,
        session_id: int,
        bytes_up: int,
        bytes_down: int,
        messages_up: int,
        messages_down: int,
    ) -> None:
        """Add the given amounts to a session's traffic counters."""
        query = (
            "UPDATE proxy_sessions SET bytes_up = bytes_up + ?, bytes_down = bytes_down + ?, "
            "messages_up = messages_up + ?, messages_down = messages_down + ? WHERE id = ?"
        )
        with _reporting("update proxy session traffic"):
            self._db.execute(
                query, (bytes_up, bytes_down, messages_up, messages_down, session_id)
            )

    def delete(self, session_id: int) -> None:
        with _reporting("delete proxy session"):
            self._db.execute("DELETE FROM proxy_sessions WHERE id = ?", (session_id,))

    def count_active(self) -> int:
        with _reporting("count active proxy sessions"):
            row = self._db.query_one(
                "SELECT COUNT(*) FROM proxy_sessions WHERE status = 'active'"
            )
        return row[0]

    def get_traffic_stats(self) -> tuple[int, int, int, int]:
        """Return total bytes up, bytes down, messages up and messages down over all sessions."""
        with _reporting("get traffic stats"):
            row = self._db.query_one(_TRAFFIC_QUERY)
        return row[0], row[1], row[2], row[3]