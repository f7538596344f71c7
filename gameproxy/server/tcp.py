"""A TCP listener that hands every accepted connection to a handler."""

from __future__ import annotations

import socket
import threading
from typing import Protocol

from ..netutils.framing import is_connection_closed
from ..prettylog import ComponentLogger, with_component

_ACCEPT_POLL_SECONDS = 0.2


class ConnectionHandler(Protocol):
    """Anything that can serve one accepted connection."""

    def handle_connection(self, conn: socket.socket) -> None: ...


class TCPServer:
    """Listens on ``host:port`` and serves each connection on its own thread."""

    def __init__(self, host: str, port: str, logger: ComponentLogger | None = None) -> None:
        self.host = host
        self.port = port
        self._logger = logger if logger is not None else with_component("tcp")
        self._listener: socket.socket | None = None
        self._address: tuple[str, int] | None = None
        self._closed = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def address(self) -> tuple[str, int] | None:
        """The address actually bound, or None before the server was started."""
        return self._address

    def start(self, handler: ConnectionHandler) -> None:
        """Bind the listener and start accepting connections in the background.

        Raises OSError when the address cannot be bound.
        """
        try:
            listener = socket.create_server((self.host, int(self.port)))
        except OSError as err:
            self._logger.error("failed to create tcp listener", error=err)
            raise
        listener.settimeout(_ACCEPT_POLL_SECONDS)

        self._listener = listener
        self._address = listener.getsockname()[:2]
        self._closed.clear()
        self._logger.info(
            "listening for tcp connections", address=f"{self.host}:{self._address[1]}"
        )

        self._thread = threading.Thread(
            target=self._accept_loop, args=(listener, handler), name="tcp-accept", daemon=True
        )
        self._thread.start()

    def _accept_loop(self, listener: socket.socket, handler: ConnectionHandler) -> None:
        try:
            while not self._closed.is_set():
                try:
                    conn, _ = listener.accept()
                except TimeoutError:
                    continue
                except OSError as err:
                    if self._closed.is_set() or is_connection_closed(err):
                        self._logger.error(
                            "listener closed, stopp accepting connections", error=err
                        )
                        return
                    self._logger.warning("accept error, continuing", error=err)
                    continue
                threading.Thread(
                    target=handler.handle_connection, args=(conn,), daemon=True
                ).start()
        finally:
            listener.close()

    def close(self) -> None:
        """Stop accepting connections and release the listening socket."""
        self._closed.set()
        if self._listener is not None:
            self._listener.close()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)