"""Persistence of the proxy's aggregate statistics."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from typing import Iterator

from .database import Database
from .models import ProxyStats

_STATS_COLUMNS = (
    "total_connections, active_connections, active_game_servers, total_game_servers, "
    "total_bytes_up, total_bytes_down, total_messages_up, total_messages_down, last_updated"
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


class StatsRepository:
    """Reads and writes the single row of ``proxy_stats``."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def get_stats(self) -> ProxyStats:
        with _reporting("get proxy stats"):
            row = self._db.query_one(f"SELECT {_STATS_COLUMNS} FROM proxy_stats WHERE id = 1")
        if row is None:
            raise sqlite3.DatabaseError("failed to get proxy stats: no rows in result set")
        return ProxyStats(**dict(row))

    def update_stats(self, stats: ProxyStats) -> None:
        """Store every counter of ``stats``; the update time is set by the database."""
        query = (
            "UPDATE proxy_stats SET total_connections = ?, active_connections = ?, "
            "active_game_servers = ?, total_game_servers = ?, total_bytes_up = ?, "
            "total_bytes_down = ?, total_messages_up = ?, total_messages_down = ? WHERE id = 1"
        )
        with _reporting("update proxy stats"):
            self._db.execute(
                query,
                (
                    stats.total_connections,
                    stats.active_connections,
                    stats.active_game_servers,
                    stats.total_game_servers,
                    stats.total_bytes_up,
                    stats.total_bytes_down,
                    stats.total_messages_up,
                    stats.total_messages_down,
                ),
            )

    def increment_total_connections(self) -> None:
        with _reporting("increment total connections"):
            self._db.execute(
                "UPDATE proxy_stats SET total_connections = total_connections + 1 WHERE id = 1"
            )

    def update_active_connections(self, count: int) -> None:
        with _reporting("update active connections"):
            self._db.execute("UPDATE proxy_stats SET active_connections = ? WHERE id = 1", (count,))

    def update_active_game_servers(self, count: int) -> None:
        with _reporting("update active game servers"):
            self._db.execute(
                "UPDATE proxy_stats SET active_game_servers = ? WHERE id = 1", (count,)
            )

    def update_total_game_servers(self, count: int) -> None:
        with _reporting("update total game servers"):
            self._db.execute("UPDATE proxy_stats SET total_game_servers = ? WHERE id = 1", (count,))

    def update_traffic_stats(
        self, bytes_up: int, bytes_down: int, messages_up: int, messages_down: int
    ) -> None:
        with _reporting("update traffic stats"):
            self._db.execute(
                "UPDATE proxy_stats SET total_bytes_up = ?, total_bytes_down = ?, "
                "total_messages_up = ?, total_messages_down = ? WHERE id = 1",
                (bytes_up, bytes_down, messages_up, messages_down),
            )

    def refresh_stats(self) -> None:
        """Recompute active counts and traffic totals from the other tables."""
        with _reporting("get active connections count"):
            active_connections = self._count(
                "SELECT COUNT(*) FROM clients "
                "WHERE status IN ('connected', 'authenticated', 'proxying')"
            )
        with _reporting("get active game servers count"):
            active_game_servers = self._count(
                "SELECT COUNT(*) FROM game_servers WHERE status = 'running'"
            )
        with _reporting("get total game servers count"):
            total_game_servers = self._count("SELECT COUNT(*) FROM game_servers")
        with _reporting("get traffic stats"):
            traffic = tuple(self._db.query_one(_TRAFFIC_QUERY))

        query = (
            "UPDATE proxy_stats SET active_connections = ?, active_game_servers = ?, "
            "total_game_servers = ?, total_bytes_up = ?, total_bytes_down = ?, "
            "total_messages_up = ?, total_messages_down = ? WHERE id = 1"
        )
        with _reporting("refresh stats"):
            self._db.execute(
                query, (active_connections, active_game_servers, total_game_servers, *traffic)
            )

    def _count(self, query: str) -> int:
        return self._db.query_one(query)[0]