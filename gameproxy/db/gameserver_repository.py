"""Persistence of game servers known to the proxy."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator

from .database import Database
from .models import GameServerRecord

_COLUMNS = "id, host, port, capacity, current_load, status, created_at, updated_at"


@contextmanager
def _reporting(action: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as err:
        raise sqlite3.DatabaseError(f"failed to {action}: {err}") from err


def _record(row: sqlite3.Row) -> GameServerRecord:
    return GameServerRecord(
        id=row["id"],
        host=row["host"],
        port=row["port"],
        capacity=row["capacity"],
        current_load=row["current_load"],
        status=row["status"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class GameServerRepository:
    """Reads and writes rows of the ``game_servers`` table."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def create(self, server: GameServerRecord) -> None:
        """Insert ``server`` and fill in its new id and timestamps."""
        query = (
            "INSERT INTO game_servers (host, port, capacity, current_load, status, "
            "created_at, updated_at, last_ping) VALUES (?, ?, ?, ?, ?, ?, ?, ?)"
        )
        now = datetime.now()
        with _reporting("create game server"):
            cursor = self._db.execute(
                query,
                (
                    server.host,
                    server.port,
                    server.capacity,
                    server.current_load,
                    server.status,
                    now,
                    now,
                    now,
                ),
            )
        if cursor.lastrowid is None:
            raise sqlite3.DatabaseError("failed to get last insert id")

        server.id = cursor.lastrowid
        server.created_at = now
        server.updated_at = now

    def _select_one(self, action: str, query: str, params=()) -> GameServerRecord | None:
        with _reporting(action):
            row = self._db.query_one(query, params)
        return None if row is None else _record(row)

    def get_by_id(self, server_id: int) -> GameServerRecord | None:
        return self._select_one(
            "get game server",
            f"SELECT {_COLUMNS} FROM game_servers WHERE id = ?",
            (server_id,),
        )

    def get_by_host_port(self, host: str, port: str) -> GameServerRecord | None:
        return self._select_one(
            "get game server",
            f"SELECT {_COLUMNS} FROM game_servers WHERE host = ? AND port = ?",
            (host, port),
        )

    def get_available(self) -> GameServerRecord | None:
        """Return the least loaded running server that still has room, if any."""
        return self._select_one(
            "get available game server",
            f"SELECT {_COLUMNS} FROM game_servers "
            "WHERE status = 'running' AND current_load < capacity "
            "ORDER BY current_load ASC LIMIT 1",
        )

    def get_all(self) -> list[GameServerRecord]:
        """Return all game servers, most recently created first."""
        with _reporting("query game servers"):
            rows = self._db.query_all(
                f"SELECT {_COLUMNS} FROM game_servers ORDER BY created_at DESC"
            )
        return [_record(row) for row in rows]

    def update(self, server: GameServerRecord) -> None:
        """Store every field of ``server`` and refresh its last ping."""
        query = (
            "UPDATE game_servers SET host = ?, port = ?, capacity = ?, current_load = ?, "
            "status = ?, last_ping = ? WHERE id = ?"
        )
        with _reporting("update game server"):
            self._db.execute(
                query,
                (
                    server.host,
                    server.port,
                    server.capacity,
                    server.current_load,
                    server.status,
                    datetime.now(),
                    server.id,
                ),
            )

    def update_status(self, server_id: int, status: str) -> None:
        with _reporting("update game server status"):
            self._db.execute(
                "UPDATE game_servers SET status = ?, last_ping = ? WHERE id = ?",
                (status, datetime.now(), server_id),
            )

    def update_load(self, server_id: int, load: int) -> None:
        with _reporting("update game server load"):
            self._db.execute(
                "UPDATE game_servers SET current_load = ?, last_ping = ? WHERE id = ?",
                (load, datetime.now(), server_id),
            )

    def increment_load(self, server_id: int) -> None:
        with _reporting("increment game server load"):
            self._db.execute(
                "UPDATE game_servers SET current_load = current_load + 1, last_ping = ? "
                "WHERE id = ?",
                (datetime.now(), server_id),
            )

    def decrement_load(self, server_id: int) -> None:
        """Lower the load by one, never below zero."""
        with _reporting("decrement game server load"):
            self._db.execute(
                "UPDATE game_servers SET current_load = CASE "
                "WHEN current_load > 0 THEN current_load - 1 ELSE 0 END, "
                "last_ping = ? WHERE id = ?",
                (datetime.now(), server_id),
            )

    def delete(self, server_id: int) -> None:
        with _reporting("delete game server"):
            self._db.execute("DELETE FROM game_servers WHERE id = ?", (server_id,))