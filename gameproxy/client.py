"""A game client that authenticates at the proxy and exchanges framed messages."""

from __future__ import annotations

import queue
import socket
import threading
from contextlib import suppress
from dataclasses import dataclass, replace

from .netutils.framing import read_message, send_message
from .netutils.reader import listen_for_messages
from .prettylog import with_component

DEFAULT_CONNECT_TIMEOUT = 30.0
DEFAULT_READ_TIMEOUT = 30.0
DEFAULT_WRITE_TIMEOUT = 10.0

_AUTH_REQUEST = "auth: someUserToken"
_QUEUE_SIZE = 20
_POLL_SECONDS = 0.1


@dataclass
class ClientConfig:
    """Client settings; a timeout of zero selects its default (seconds)."""

    name: str = ""
    connect_timeout: float = 0.0
    read_timeout: float = 0.0
    write_timeout: float = 0.0


class ClientError(Exception):
    """Connecting, authenticating or sending failed."""


class Client:
    """Connects to the proxy, authenticates and listens for messages in the background."""

    def __init__(self, config: ClientConfig | None = None) -> None:
        config = config if config is not None else ClientConfig()
        self.config = replace(
            config,
            connect_timeout=config.connect_timeout or DEFAULT_CONNECT_TIMEOUT,
            read_timeout=config.read_timeout or DEFAULT_READ_TIMEOUT,
            write_timeout=config.write_timeout or DEFAULT_WRITE_TIMEOUT,
        )
        self.received: list[str] = []
        self._logger = with_component("client")
        self._conn: socket.socket | None = None
        self._lock = threading.Lock()
        self._closed = threading.Event()

    def connect(self, host: str, port: str) -> None:
        """Connect and authenticate; afterwards messages are handled in the background.

        Raises ClientError when the connection or the authentication fails.
        """
        if self._closed.is_set():
            raise ClientError("error connecting to server: context canceled")

        self._logger.info("connecting client", address=f"{host}:{port}")
        try:
            conn = socket.create_connection(
                (host, int(port)), timeout=self.config.connect_timeout
            )
        except OSError as err:
            raise ClientError(f"error connecting to server {err}") from err

        with self._lock:
            self._conn = conn

        try:
            self._auth(conn)
        except (ClientError, OSError, ValueError) as err:
            self.close()
            raise ClientError(f"auth error {err}") from err

        self._logger.info("connected and authenticated")
        threading.Thread(
            target=self._handle_proxy_connection, args=(conn,), name="client-proxy", daemon=True
        ).start()

    def _auth(self, conn: socket.socket) -> None:
        self._logger.info("authenticating client")
        self.send(_AUTH_REQUEST)

        conn.settimeout(self.config.read_timeout)
        try:
            msg, _ = read_message(conn, self._logger)
        except EOFError as err:
            raise ClientError("proxy aborted connection") from err
        except (OSError, ValueError) as err:
            raise ClientError(f"failed to read from connection: {err}") from err

        if msg == "AUTH_FAILED":
            raise ClientError("auth failed")
        if msg != "AUTH_OK":
            raise ClientError("unknown auth return")
        self._logger.info("successful authenticated client")

    def _handle_proxy_connection(self, conn: socket.socket) -> None:
        messages: queue.Queue = queue.Queue(maxsize=_QUEUE_SIZE)
        threading.Thread(
            target=listen_for_messages,
            args=(self._closed, conn, messages, self.config.read_timeout, self._logger),
            daemon=True,
        ).start()

        try:
            while True:
                try:
                    msg = messages.get(timeout=_POLL_SECONDS)
                except queue.Empty:
                    if self._closed.is_set():
                        self._logger.info(
                            "proxy communication stopped", reason="context cancelled"
                        )
                        return
                    continue

                if msg is None:
                    self._logger.info("proxy channel closed")
                    return
                if msg == "":
                    self._logger.warning("received emptpy messages from proxy")
                    continue
                if msg.endswith("aborting connection") or "gs connection closed" in msg:
                    self._logger.info("abort received from proxy")
                    return

                self.received.append(msg)
                self._logger.info("received message", message=msg)
        finally:
            self.close()

    def send(self, msg: str) -> None:
        """Send one framed message to the proxy."""
        with self._lock:
            if self._conn is None:
                raise ClientError("client not connected")
            if self._closed.is_set():
                raise ClientError("can't send message - reason: context cancelled")
            self._conn.settimeout(self.config.write_timeout)
            send_message(self._conn, msg, self._logger)

    def is_connected(self) -> bool:
        with self._lock:
            return self._conn is not None

    def close(self) -> None:
        """Stop listening and close the connection; the client cannot reconnect."""
        with self._lock:
            self._closed.set()
            conn, self._conn = self._conn, None
            if conn is not None:
                self._logger.info("closing connection")
                with suppress(OSError):
                    conn.shutdown(socket.SHUT_RDWR)
                conn.close()