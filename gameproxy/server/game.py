"""A small game server that answers proxied client messages with game state."""

from __future__ import annotations

import queue
import socket
import threading
import time
from contextlib import suppress
from dataclasses import dataclass

from ..netutils.connection import ConnectionManager
from ..netutils.framing import forward_msg, send_message
from ..netutils.reader import listen_for_messages
from ..prettylog import with_component
from .tcp import TCPServer

CLIENT_AUTH_PREFIX = "CLIENT_AUTH:"
_UINT16_MASK = 0xFFFF
_QUEUE_SIZE = 10


@dataclass
class GameServerConfig:
    """Where a game server listens, how many connections it takes, and its I/O timeout."""

    host: str
    port: str
    capacity: int
    timeout: float = 0.0


@dataclass
class _GSClient:
    id: str
    authenticated: bool


def _close(conn: socket.socket) -> None:
    with suppress(OSError):
        conn.shutdown(socket.SHUT_RDWR)
    with suppress(OSError):
        conn.close()


class GameServer:
    """Accepts proxy connections, registers clients and replies with game state."""

    def __init__(self, config: GameServerConfig) -> None:
        self._logger = with_component("gameserver")
        self.host = config.host
        self.port = config.port
        self.capacity = config.capacity & _UINT16_MASK
        self.timeout = config.timeout
        self._tcp = TCPServer(config.host, config.port, self._logger)
        self._connections = ConnectionManager(config.capacity)
        self._clients: dict[str, _GSClient] = {}
        self._message_count = 0
        self._proxy_conn: socket.socket | None = None
        self._lock = threading.Lock()

    @property
    def client_ids(self) -> frozenset[str]:
        """Ids of the clients currently registered."""
        with self._lock:
            return frozenset(self._clients)

    def start(self) -> None:
        """Start listening; ``port`` then holds the port actually bound."""
        self._tcp.start(self)
        address = self._tcp.address
        if address is not None:
            self.port = str(address[1])

    def close(self) -> None:
        """Stop accepting new proxy connections."""
        self._tcp.close()

    def handle_connection(self, conn: socket.socket) -> None:
        """Serve one proxy connection until it ends."""
        self._connections.increment()
        with self._lock:
            self._proxy_conn = conn
        try:
            self._serve_proxy(conn)
        finally:
            with self._lock:
                self._proxy_conn = None
            self._logger.info("proxy connection cleaned up")
            self._connections.decrement()
            _close(conn)

    def _serve_proxy(self, conn: socket.socket) -> None:
        stop = threading.Event()
        messages: queue.Queue = queue.Queue(maxsize=_QUEUE_SIZE)
        threading.Thread(
            target=listen_for_messages,
            args=(stop, conn, messages, self.timeout, self._logger),
            daemon=True,
        ).start()

        client_id = ""
        try:
            while True:
                msg = messages.get()
                if msg is None:
                    self._logger.info("proxy channel closed")
                    return
                if msg == "":
                    self._logger.warning("received emptpy messages from proxy")
                    continue

                with self._lock:
                    client = self._clients.get(client_id)
                if client is None or not client.authenticated:
                    client_id = self._handle_client_auth(conn, msg)
                    continue

                if msg.endswith("aborting connection") or "client connection closed" in msg:
                    self._logger.info("abort received for client", clientId=client_id)
                    self._remove_client(client_id)
                    return

                self._handle_client_message(conn)
        finally:
            stop.set()

    def _handle_client_message(self, conn: socket.socket) -> None:
        with self._lock:
            self._message_count = (self._message_count + 1) & _UINT16_MASK
            messages = self._message_count
            players = len(self._clients)

        response = (
            f"GAME_STATE:players_{players},received_messages_{messages},"
            f"timestamp_{int(time.time())}"
        )
        try:
            forward_msg(conn, response, self.timeout, self._logger)
        except ConnectionError as err:
            self._logger.error("failed to forward to proxy", error=err)

    def _handle_client_auth(self, conn: socket.socket, msg: str) -> str:
        if not msg.startswith(CLIENT_AUTH_PREFIX):
            return ""

        client_id = msg[len(CLIENT_AUTH_PREFIX):]
        self._logger.info("received client auth", clientId=client_id)
        if client_id == "":
            self._logger.warning("received client with empty id")
            return ""

        with self._lock:
            self._clients[client_id] = _GSClient(id=client_id, authenticated=True)

        try:
            send_message(conn, "AUTH_ACK", self._logger)
        except (OSError, ValueError):
            return ""
        return client_id

    def _remove_client(self, client_id: str) -> None:
        with self._lock:
            self._clients.pop(client_id, None)
        self._logger.info("client removed", clientId=client_id)

    def has_capacity(self) -> bool:
        return self._connections.has_capacity()

    def current_load(self) -> int:
        return self._connections.count()