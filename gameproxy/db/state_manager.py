"""Single entry point to the proxy's persisted state."""

from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from ..prettylog import ComponentLogger, with_component
from .client_repository import ClientRepository
from .database import Database
from .gameserver_repository import GameServerRepository
from .models import ClientRecord, GameServerRecord, ProxySessionRecord, ProxyStats
from .proxysession_repository import ProxySessionRepository
from .stats_repository import StatsRepository

DEFAULT_STATS_REFRESH_INTERVAL = 30.0


@dataclass
class ProxyState:
    """A snapshot of everything the proxy knows."""

    clients: list[ClientRecord]
    game_servers: list[GameServerRecord]
    sessions: list[ProxySessionRecord]
    stats: ProxyStats
    timestamp: datetime = field(default_factory=datetime.now)


class StateManager:
    """Owns the database and its repositories and refreshes statistics in the background."""

    def __init__(self, db_path: str | Path, logger: ComponentLogger | None = None) -> None:
        try:
            self._db = Database(db_path)
        except sqlite3.Error as err:
            raise sqlite3.OperationalError(f"failed to create database: {err}") from err

        self._game_servers = GameServerRepository(self._db)
        self._clients = ClientRepository(self._db)
        self._sessions = ProxySessionRepository(self._db)
        self._stats = StatsRepository(self._db)
        self._logger = logger if logger is not None else with_component("state")
        self.stats_refresh_interval = DEFAULT_STATS_REFRESH_INTERVAL
        self._stop_event = threading.Event()
        self._refresher: threading.Thread | None = None

    def __enter__(self) -> StateManager:
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    def start(self) -> None:
        """Start refreshing statistics every ``stats_refresh_interval`` seconds."""
        self._refresher = threading.Thread(
            target=self._stats_refresh_loop, name="stats-refresh", daemon=True
        )
        self._refresher.start()
        self._logger.info("state manager started")

    def stop(self) -> None:
        """Stop the refresh loop and close the database."""
        self._stop_event.set()
        if self._refresher is not None:
            self._refresher.join()
            self._refresher = None
        self._db.close()
        self._logger.info("state manager stopped")

    def _stats_refresh_loop(self) -> None:
        while not self._stop_event.wait(self.stats_refresh_interval):
            try:
                self._stats.refresh_stats()
            except sqlite3.Error as err:
                self._logger.error("failed to refresh stats", error=err)

    # Clients

    def create_client(self, client_id: str, remote_addr: str) -> None:
        """Record a new, unauthenticated client and count the connection."""
        client = ClientRecord(
            id=client_id, status="connected", remote_addr=remote_addr, authenticated=False
        )
        try:
            self._clients.create(client)
        except sqlite3.Error as err:
            raise sqlite3.DatabaseError(f"failed to create client: {err}") from err

        try:
            self._stats.increment_total_connections()
        except sqlite3.Error as err:
            self._logger.error("failed to increment total connections", error=err)

    def get_client(self, client_id: str) -> ClientRecord | None:
        return self._clients.get_by_id(client_id)

    def update_client_status(self, client_id: str, status: str) -> None:
        self._clients.update_status(client_id, status)

    def set_client_authenticated(self, client_id: str, authenticated: bool) -> None:
        self._clients.update_authenticated(client_id, authenticated)

    def assign_client_to_game_server(self, client_id: str, game_server_id: int) -> None:
        self._clients.assign_to_game_server(client_id, game_server_id)

    def update_client_activity(self, client_id: str) -> None:
        self._clients.update_activity(client_id)

    def remove_client(self, client_id: str) -> None:
        self._clients.delete(client_id)

    def get_all_clients(self) -> list[ClientRecord]:
        return self._clients.get_all()

    def get_active_clients(self) -> list[ClientRecord]:
        """Return the clients that are currently proxying."""
        return self._clients.get_by_status("proxying")

    # Game servers

    def create_game_server(
        self, host: str, port: str, status: str, capacity: int, current_load: int
    ) -> GameServerRecord:
        server = GameServerRecord(
            host=host, port=port, capacity=capacity, current_load=current_load, status=status
        )
        try:
            self._game_servers.create(server)
        except sqlite3.Error as err:
            raise sqlite3.DatabaseError(f"failed to create game server: {err}") from err
        return server

    def get_game_server(self, server_id: int) -> GameServerRecord | None:
        return self._game_servers.get_by_id(server_id)

    def get_game_server_by_host_port(self, host: str, port: str) -> GameServerRecord | None:
        return self._game_servers.get_by_host_port(host, port)

    def get_available_game_server(self) -> GameServerRecord | None:
        return self._game_servers.get_available()

    def update_game_server_status(self, server_id: int, status: str) -> None:
        self._game_servers.update_status(server_id, status)

    def increment_game_server_load(self, server_id: int) -> None:
        self._game_servers.increment_load(server_id)

    def decrement_game_server_load(self, server_id: int) -> None:
        self._game_servers.decrement_load(server_id)

    def remove_game_server(self, server_id: int) -> None:
        self._game_servers.delete(server_id)

    def get_all_game_servers(self) -> list[GameServerRecord]:
        return self._game_servers.get_all()

    def get_active_game_servers(self) -> list[GameServerRecord]:
        """Return the game servers whose status is running."""
        return [server for server in self._game_servers.get_all() if server.status == "running"]

    # Proxy sessions

    def create_proxy_session(self, client_id: str, game_server_id: int) -> ProxySessionRecord:
        session = ProxySessionRecord(
            client_id=client_id, game_server_id=game_server_id, status="active"
        )
        try:
            self._sessions.create(session)
        except sqlite3.Error as err:
            raise sqlite3.DatabaseError(f"failed to create proxy session: {err}") from err
        return session

    def get_proxy_session(self, session_id: int) -> ProxySessionRecord | None:
        return self._sessions.get_by_id(session_id)

    def get_proxy_session_by_client(self, client_id: str) -> ProxySessionRecord | None:
        return self._sessions.get_by_client_id(client_id)

    def update_proxy_session_traffic(
        self,
        session_id: int,
        bytes_up: int,
        bytes_down: int,
        messages_up: int,
        messages_down: int,
    ) -> None:
        self._sessions.update_traffic(session_id, bytes_up, bytes_down, messages_up, messages_down)

    def end_proxy_session(self, session_id: int, status: str) -> None:
        self._sessions.end(session_id, status)

    def get_active_proxy_sessions(self) -> list[ProxySessionRecord]:
        return self._sessions.get_active()

    def get_proxy_sessions_by_game_server(self, game_server_id: int) -> list[ProxySessionRecord]:
        return self._sessions.get_by_game_server_id(game_server_id)

    # Statistics and whole state

    def get_stats(self) -> ProxyStats:
        return self._stats.get_stats()

    def refresh_stats(self) -> None:
        self._stats.refresh_stats()

    def get_full_state(self) -> ProxyState:
        """Collect clients, game servers, active sessions and statistics."""
        try:
            clients = self._clients.get_all()
        except sqlite3.Error as err:
            raise sqlite3.DatabaseError(f"failed to get clients: {err}") from err
        try:
            game_servers = self._game_servers.get_all()
        except sqlite3.Error as err:
            raise sqlite3.DatabaseError(f"failed to get game servers: {err}") from err
        try:
            sessions = self._sessions.get_active()
        except sqlite3.Error as err:
            raise sqlite3.DatabaseError(f"failed to get active sessions: {err}") from err
        try:
            stats = self._stats.get_stats()
        except sqlite3.Error as err:
            raise sqlite3.DatabaseError(f"failed to get stats: {err}") from err

        return ProxyState(
            clients=clients, game_servers=game_servers, sessions=sessions, stats=stats
        )

    def clear_all_state(self) -> None:
        self._db.clear_all()

    def health_check(self) -> None:
        self._db.health_check()