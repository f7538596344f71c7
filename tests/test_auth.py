import socket

import pytest

from gameproxy.netutils.framing import read_message, send_message
from gameproxy.server.auth import (
    AuthError,
    ClientInfo,
    complete_authentication,
    contains_auth_token,
    handle_game_server_auth,
    handle_init_auth,
)


@pytest.fixture
def pair():
    near, far = socket.socketpair()
    far.settimeout(5)
    yield near, far
    near.close()
    far.close()


@pytest.mark.parametrize(
    "msg, expected",
    [("auth: someUserToken", True), ("AUTH", True), ("please Authenticate", True), ("hello", False)],
)
def test_contains_auth_token(msg, expected):
    assert contains_auth_token(msg) is expected


def test_init_auth_success(pair):
    near, far = pair
    send_message(far, "auth: someUserToken")
    client = ClientInfo(id="c1", conn=near)
    result = handle_init_auth(client, 2, 1, None)
    assert result.success is True
    assert result.proxy_auth is True
    assert result.client_id == "c1"
    assert result.reason == "proxy auth and authorization successful"


def test_init_auth_missing_token_sends_failure(pair):
    near, far = pair
    send_message(far, "hello")
    client = ClientInfo(id="c1", conn=near)
    with pytest.raises(AuthError) as info:
        handle_init_auth(client, 2, 1, None)
    assert info.value.result.reason == "missing auth token"
    assert info.value.result.success is False
    assert read_message(far)[0] == "AUTH_FAILED"


def test_init_auth_client_disconnect(pair):
    near, far = pair
    far.close()
    client = ClientInfo(id="c1", conn=near)
    with pytest.raises(AuthError) as info:
        handle_init_auth(client, 2, 1, None)
    assert info.value.result.reason == "client disconnected during auth"


def test_init_auth_times_out(pair):
    near, _ = pair
    client = ClientInfo(id="c1", conn=near)
    with pytest.raises(AuthError, match="authentication timeout") as info:
        handle_init_auth(client, 0.3, 0.1, None)
    assert info.value.result.proxy_auth is False


def test_game_server_auth_success(pair):
    near, far = pair
    send_message(far, "AUTH_ACK")
    client = ClientInfo(id="c1", conn=None)
    result = handle_game_server_auth(client, near, 2, None)
    assert result.success is True
    assert result.game_server_auth is True
    assert result.reason == "full authentication successful"
    assert read_message(far)[0] == "CLIENT_AUTH:c1"


def test_game_server_auth_rejected(pair):
    near, far = pair
    send_message(far, "NOPE")
    client = ClientInfo(id="c1", conn=None)
    with pytest.raises(AuthError, match="instead of AUTH_ACK") as info:
        handle_game_server_auth(client, near, 2, None)
    assert info.value.result.reason == "game server rejected auth: NOPE"
    assert info.value.result.proxy_auth is True
    assert info.value.result.game_server_auth is False


def test_game_server_auth_without_response(pair):
    near, far = pair
    far.shutdown(socket.SHUT_WR)
    client = ClientInfo(id="c1", conn=None)
    with pytest.raises(AuthError) as info:
        handle_game_server_auth(client, near, 2, None)
    assert info.value.result.reason == "failed to read game server auth response"


def test_complete_authentication_sends_ok(pair):
    near, far = pair
    complete_authentication(ClientInfo(id="c1", conn=near), None)
    assert read_message(far)[0] == "AUTH_OK"