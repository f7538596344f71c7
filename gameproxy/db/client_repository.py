"""Persistence of client connections."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator

from .database import Database, retry_db_operation
from .models import ClientRecord

_COLUMNS = (
    "id, game_server_id, status, connected_at, updated_at, last_activity, "
    "remote_addr, authenticated"
)
_RETRIES = 3
_RETRY_DELAY = 0.05


@contextmanager
def _reporting(action: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as err:
        raise sqlite3.DatabaseError(f"failed to {action}: {err}") from err


def _record(row: sqlite3.Row) -> ClientRecord:
    return ClientRecord(**dict(row))


class ClientRepository:
    """Reads and writes rows of the ``clients`` table."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def create(self, client: ClientRecord) -> None:
        """Insert ``client`` and stamp its connection, update and activity times."""
        query = (
            "INSERT INTO clients (id, game_server_id, status, connected_at, updated_at, "
            "last_activity, remote_addr, authenticated) VALUES (?, ?, ?, ?, ?, ?, ?, ?)"
        )
        now = datetime.now()
        params = (
            client.id,
            client.game_server_id,
            client.status,
            now,
            now,
            now,
            client.remote_addr,
            client.authenticated,
        )
        with _reporting("create client"):
            retry_db_operation(lambda: self._db.execute(query, params), _RETRIES, _RETRY_DELAY)

        client.connected_at = now
        client.updated_at = now
        client.last_activity = now

    def get_by_id(self, client_id: str) -> ClientRecord | None:
        with _reporting("get client"):
            row = self._db.query_one(f"SELECT {_COLUMNS} FROM clients WHERE id = ?", (client_id,))
        return None if row is None else _record(row)

    def _select_many(self, action: str, query: str, params=()) -> list[ClientRecord]:
        with _reporting(action):
            rows = self._db.query_all(query, params)
        return [_record(row) for row in rows]

    def get_by_game_server_id(self, game_server_id: int) -> list[ClientRecord]:
        return self._select_many(
            "query clients by game server",
            f"SELECT {_COLUMNS} FROM clients WHERE game_server_id = ?",
            (game_server_id,),
        )

    def get_by_status(self, status: str) -> list[ClientRecord]:
        return self._select_many(
            "query clients by status",
            f"SELECT {_COLUMNS} FROM clients WHERE status = ?",
            (status,),
        )

    def get_all(self) -> list[ClientRecord]:
        """Return all clients, most recently connected first."""
        return self._select_many(
            "query all clients",
            f"SELECT {_COLUMNS} FROM clients ORDER BY connected_at DESC",
        )

    def update(self, client: ClientRecord) -> None:
        """Store game server, status and authentication of ``client`` and touch its activity."""
        client.last_activity = datetime.now()
        query = (
            "UPDATE clients SET game_server_id = ?, status = ?, last_activity = ?, "
            "authenticated = ? WHERE id = ?"
        )
        with _reporting("update client"):
            self._db.execute(
                query,
                (
                    client.game_server_id,
                    client.status,
                    client.last_activity,
                    client.authenticated,
                    client.id,
                ),
            )

    def update_status(self, client_id: str, status: str) -> None:
        with _reporting("update client status"):
            self._db.execute(
                "UPDATE clients SET status = ?, last_activity = ? WHERE id = ?",
                (status, datetime.now(), client_id),
            )

    def update_authenticated(self, client_id: str, authenticated: bool) -> None:
        with _reporting("update client authentication"):
            self._db.execute(
                "UPDATE clients SET authenticated = ?, last_activity = ? WHERE id = ?",
                (authenticated, datetime.now(), client_id),
            )

    def assign_to_game_server(self, client_id: str, game_server_id: int) -> None:
        """Attach a client to a game server and mark it as proxying."""
        with _reporting("assign client to game server"):
            self._db.execute(
                "UPDATE clients SET game_server_id = ?, status = 'proxying', last_activity = ? "
                "WHERE id = ?",
                (game_server_id, datetime.now(), client_id),
            )

    def update_activity(self, client_id: str) -> None:
        with _reporting("update client activity"):
            self._db.execute(
                "UPDATE clients SET last_activity = ? WHERE id = ?",
                (datetime.now(), client_id),
            )

    def delete(self, client_id: str) -> None:
        query = "DELETE FROM clients WHERE id = ?"
        with _reporting("delete client"):
            retry_db_operation(
                lambda: self._db.execute(query, (client_id,)), _RETRIES, _RETRY_DELAY
            )

    def count_by_game_server(self, game_server_id: int) -> int:
        """Count authenticated or proxying clients on a game server."""
        with _reporting("count clients by game server"):
            row = self._db.query_one(
                "SELECT COUNT(*) FROM clients WHERE game_server_id = ? "
                "AND status IN ('authenticated', 'proxying')",
                (game_server_id,),
            )
        return row[0]

    def count_active(self) -> int:
        """Count clients that are connected, authenticated or proxying."""
        with _reporting("count active clients"):
            row = self._db.query_one(
                "SELECT COUNT(*) FROM clients "
                "WHERE status IN ('connected', 'authenticated', 'proxying')"
            )
        return row[0]