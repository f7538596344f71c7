"""Length-prefixed message framing over TCP streams.

Every frame is a 4-byte big-endian length followed by that many bytes of
UTF-8 payload. The length counts only the payload, not the header.
"""

from __future__ import annotations

import errno
import struct

from ..prettylog import ComponentLogger, with_component

MAX_MESSAGE_LENGTH = 0xFFFFFFFF
_HEADER = struct.Struct(">I")
_CLOSED_ERRNOS = {errno.EBADF, errno.ENOTSOCK}

_default_log = with_component("netutils")


class UnexpectedEOFError(ConnectionError):
    """The stream ended in the middle of a frame."""


def _logger(log: ComponentLogger | None) -> ComponentLogger:
    return _default_log if log is None else log


def _write(conn, data: bytes) -> int:
    sendall = getattr(conn, "sendall", None)
    if sendall is not None:
        sendall(data)
    else:
        conn.write(data)
    return len(data)


def _read_exact(conn, size: int) -> bytes:
    """Read exactly ``size`` bytes, raising EOFError if nothing at all arrived."""
    received = bytearray()
    recv = getattr(conn, "recv", None)
    while len(received) < size:
        remaining = size - len(received)
        chunk = recv(remaining) if recv is not None else conn.read(remaining)
        if not chunk:
            if not received:
                raise EOFError("connection closed")
            raise UnexpectedEOFError(
                f"unexpected end of stream: expected {size} bytes, got {len(received)}"
            )
        received += chunk
    return bytes(received)


def is_connection_closed(err: BaseException) -> bool:
    """Tell whether an error comes from using a connection that was closed locally."""
    if isinstance(err, OSError) and err.errno in _CLOSED_ERRNOS:
        return True
    if isinstance(err, ValueError) and "closed" in str(err):
        return True
    return "use of closed network connection" in str(err)


def send_message(conn, msg: str, log: ComponentLogger | None = None) -> None:
    """Write ``msg`` as one length-prefixed frame."""
    log = _logger(log)
    payload = msg.encode("utf-8")
    if len(payload) > MAX_MESSAGE_LENGTH:
        log.error("message is too large for 4bytes", length=len(payload))
        raise ValueError("invalid input")

    frame = _HEADER.pack(len(payload)) + payload
    try:
        sent = _write(conn, frame)
    except OSError as err:
        log.error("error sending data", error=err)
        raise
    log.info("sent data", bytes=sent, message=msg)


def read_message(conn, log: ComponentLogger | None = None) -> tuple[str, int]:
    """Read one frame and return its text and payload length.

    Raises EOFError when the stream ends cleanly before a frame part starts,
    and UnexpectedEOFError when it ends inside one.
    """
    log = _logger(log)
    try:
        header = _read_exact(conn, _HEADER.size)
    except EOFError:
        raise
    except (OSError, ValueError) as err:
        if not is_connection_closed(err):
            log.error("failed to read length prefix", error=err)
        raise

    (length,) = _HEADER.unpack(header)
    try:
        data = _read_exact(conn, length)
    except EOFError:
        raise
    except (OSError, ValueError) as err:
        if not is_connection_closed(err):
            log.error("failed to read data", error=err)
        raise

    return data.decode("utf-8", errors="replace"), length


def forward_msg(conn, msg: str, timeout: float | None, log: ComponentLogger | None = None) -> None:
    """Send ``msg`` on ``conn``, applying ``timeout`` seconds first when positive."""
    if timeout is not None and timeout > 0:
        try:
            conn.settimeout(timeout)
        except OSError as err:
            raise ConnectionError(f"failed to set write deadline {err}") from err

    try:
        send_message(conn, msg, log)
    except (OSError, ValueError) as err:
        raise ConnectionError(f"failed sending message {err}") from err