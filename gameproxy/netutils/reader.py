"""Background reading of framed messages into a queue."""

from __future__ import annotations

import queue
import threading

from ..prettylog import ComponentLogger, with_component
from .framing import is_connection_closed, read_message

_PUT_POLL_SECONDS = 0.05
_default_log = with_component("netutils")


class MessageReader:
    """Reads frames from a connection and hands them to a queue.

    When reading ends, for any reason, ``None`` is put on the queue to mark
    that no more messages will follow.
    """

    def __init__(self, conn, timeout: float | None, logger: ComponentLogger | None = None) -> None:
        self._conn = conn
        self._timeout = timeout
        self._logger = logger if logger is not None else _default_log

    def listen(self, stop_event: threading.Event, messages: queue.Queue) -> None:
        """Read until the stream ends, fails or ``stop_event`` is set."""
        try:
            self._read_loop(stop_event, messages)
        finally:
            if not _put(stop_event, messages, None):
                try:
                    messages.put_nowait(None)
                except queue.Full:
                    pass

    def _read_loop(self, stop_event: threading.Event, messages: queue.Queue) -> None:
        while not stop_event.is_set():
            if self._timeout is not None and self._timeout > 0:
                try:
                    self._conn.settimeout(self._timeout)
                except OSError as err:
                    self._logger.error("failed to set read deadline", error=err)
                    return

            try:
                msg, size = read_message(self._conn, self._logger)
            except EOFError as err:
                self._logger.info("connection disconnected", error=err)
                return
            except (OSError, ValueError) as err:
                if is_connection_closed(err):
                    self._logger.debug("connection closed during read", error=err)
                else:
                    self._logger.error("failed to read from connection", error=err)
                return

            self._logger.info("received data", bytes=size, data=msg)

            if not _put(stop_event, messages, msg):
                return


def _put(stop_event: threading.Event, messages: queue.Queue, item) -> bool:
    """Put ``item`` unless ``stop_event`` is set first; report whether it was put."""
    while not stop_event.is_set():
        try:
            messages.put(item, timeout=_PUT_POLL_SECONDS)
            return True
        except queue.Full:
            continue
    return False


def listen_for_messages(
    stop_event: threading.Event,
    conn,
    messages: queue.Queue,
    timeout: float | None,
    logger: ComponentLogger | None = None,
) -> None:
    """Read framed messages from ``conn`` into ``messages`` until done."""
    MessageReader(conn, timeout, logger).listen(stop_event, messages)