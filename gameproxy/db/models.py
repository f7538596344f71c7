"""Records stored in the proxy state database."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class GameServerRecord:
    """A game server known to the proxy; status is "running", "stopped" or "error"."""

    id: int = 0
    host: str = ""
    port: str = ""
    capacity: int = 0
    current_load: int = 0
    status: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class ClientRecord:
    """A client connection; status is "connected", "authenticated", "proxying" or "disconnected"."""

    id: str = ""
    game_server_id: int | None = None
    status: str = ""
    connected_at: datetime | None = None
    updated_at: datetime | None = None
    last_activity: datetime | None = None
    remote_addr: str = ""
    authenticated: bool = False


@dataclass
class ProxySessionRecord:
    """A proxied session between a client and a game server; status is "active", "ended" or "error"."""

    id: int = 0
    client_id: str = ""
    game_server_id: int = 0
    started_at: datetime | None = None
    ended_at: datetime | None = None
    status: str = ""
    bytes_up: int = 0
    bytes_down: int = 0
    messages_up: int = 0
    messages_down: int = 0


@dataclass
class ProxyStats:
    """Aggregate statistics over the whole proxy."""

    total_connections: int = 0
    active_connections: int = 0
    active_game_servers: int = 0
    total_game_servers: int = 0
    total_bytes_up: int = 0
    total_bytes_down: int = 0
    total_messages_up: int = 0
    total_messages_down: int = 0
    last_updated: datetime | None = None