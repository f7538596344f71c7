"""Authentication of clients at the proxy and at the game server."""

from __future__ import annotations

import threading
import time
from contextlib import suppress
from dataclasses import dataclass, field

from ..netutils.framing import read_message, send_message
from ..prettylog import ComponentLogger, with_component

DEFAULT_AUTH_TIMEOUT = 30.0

AUTH_FAILED = "AUTH_FAILED"
AUTH_OK = "AUTH_OK"
AUTH_ACK = "AUTH_ACK"
CLIENT_AUTH_PREFIX = "CLIENT_AUTH:"

_default_log = with_component("proxy")


@dataclass
class ClientInfo:
    """A client connected to the proxy and its traffic since the last report."""

    id: str
    conn: object
    gs_conn: object | None = None
    gs_id: int = 0
    session_id: int = 0
    bytes_up: int = 0
    bytes_down: int = 0
    messages_up: int = 0
    messages_down: int = 0
    last_update: float | None = None
    traffic_lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )


@dataclass
class AuthResult:
    """Outcome of an authentication step."""

    success: bool
    client_id: str
    reason: str
    proxy_auth: bool = False
    game_server_auth: bool = False


class AuthError(Exception):
    """Authentication failed; ``result`` tells at which step and why."""

    def __init__(self, message: str, result: AuthResult) -> None:
        super().__init__(message)
        self.result = result


def contains_auth_token(msg: str) -> bool:
    """Very simple token check: the message mentions "auth" in any case."""
    return "auth" in msg.lower()


def _fail(client: ClientInfo, reason: str, message: str, *, proxy_auth: bool = False) -> AuthError:
    return AuthError(
        message,
        AuthResult(success=False, client_id=client.id, reason=reason, proxy_auth=proxy_auth),
    )


def _reject(client: ClientInfo, logger: ComponentLogger) -> None:
    with suppress(OSError, ValueError):
        send_message(client.conn, AUTH_FAILED, logger)


def _authenticate_at_proxy(client: ClientInfo, msg: str, logger: ComponentLogger) -> AuthResult:
    if not contains_auth_token(msg):
        logger.warning("proxy auth failed - missing auth token", client=client.id)
        return AuthResult(False, client.id, "missing auth token", proxy_auth=False)
    logger.info("proxy authentication successful", client=client.id)
    return AuthResult(True, client.id, "proxy auth successful", proxy_auth=True)


def _authorize_client(client: ClientInfo, logger: ComponentLogger) -> AuthResult:
    logger.info("proxy authorization successful", client=client.id)
    return AuthResult(True, client.id, "authorization successful", proxy_auth=True)


def handle_init_auth(
    client: ClientInfo,
    auth_timeout: float | None,
    read_timeout: float | None,
    logger: ComponentLogger | None = None,
) -> AuthResult:
    """Wait for the client's auth message and check it at the proxy.

    Read errors other than a disconnect are retried until ``auth_timeout``
    seconds have passed. Raises AuthError on failure.
    """
    log = logger if logger is not None else _default_log
    if auth_timeout is None or auth_timeout <= 0:
        auth_timeout = DEFAULT_AUTH_TIMEOUT
    deadline = time.monotonic() + auth_timeout

    while True:
        if time.monotonic() >= deadline:
            raise _fail(client, "authentication timeout", "authentication timeout")

        if read_timeout is not None and read_timeout > 0:
            try:
                client.conn.settimeout(read_timeout)
            except OSError as err:
                raise _fail(
                    client,
                    "failed to set read deadline",
                    f"failed to set read deadline: {err}",
                ) from err

        try:
            msg, size = read_message(client.conn, log)
        except EOFError as err:
            raise _fail(
                client, "client disconnected during auth", "client disconnected during auth"
            ) from err
        except (OSError, ValueError) as err:
            log.warning("failed to read from connection, continuing auth loop", error=err)
            continue

        log.info("received auth data", bytes=size, data=msg)

        proxy_result = _authenticate_at_proxy(client, msg, log)
        if not proxy_result.success:
            _reject(client, log)
            raise AuthError(
                f"proxy authentication failed: {proxy_result.reason}", proxy_result
            )

        authorize_result = _authorize_client(client, log)
        if not authorize_result.success:
            _reject(client, log)
            raise AuthError(f"authorization failed: {authorize_result.reason}", authorize_result)

        log.info("proxy authentication and authorization successful", client=client.id)
        return AuthResult(
            True, client.id, "proxy auth and authorization successful", proxy_auth=True
        )


def handle_game_server_auth(
    client: ClientInfo,
    gs_conn,
    timeout: float | None,
    logger: ComponentLogger | None = None,
) -> AuthResult:
    """Announce the client to the game server and wait for its acknowledgement."""
    log = logger if logger is not None else _default_log

    def failure(reason: str, message: str) -> AuthError:
        return AuthError(
            message,
            AuthResult(False, client.id, reason, proxy_auth=True, game_server_auth=False),
        )

    try:
        send_message(gs_conn, f"{CLIENT_AUTH_PREFIX}{client.id}", log)
    except (OSError, ValueError) as err:
        raise failure(
            "failed to send auth to game server",
            f"failed to send client auth to game server: {err}",
        ) from err

    if timeout is not None and timeout > 0:
        try:
            gs_conn.settimeout(timeout)
        except OSError as err:
            raise failure(
                "failed to set read deadline for game server",
                f"failed to set read deadline for game server: {err}",
            ) from err

    try:
        response, _ = read_message(gs_conn, log)
    except (EOFError, OSError, ValueError) as err:
        raise failure(
            "failed to read game server auth response",
            f"failed to read game server auth response: {err}",
        ) from err

    if response != AUTH_ACK:
        raise failure(
            f"game server rejected auth: {response}",
            f"game server auth failed: got {response} instead of AUTH_ACK",
        )

    log.info("game server authentication successful", client=client.id)
    return AuthResult(
        True, client.id, "full authentication successful", proxy_auth=True, game_server_auth=True
    )


def complete_authentication(client: ClientInfo, logger: ComponentLogger | None = None) -> None:
    """Tell the client that it is fully authenticated."""
    send_message(client.conn, AUTH_OK, logger if logger is not None else _default_log)