import socket
import time

import pytest

from gameproxy.client import Client, ClientConfig
from gameproxy.netutils.framing import read_message, send_message
from gameproxy.prettylog import with_component
from gameproxy.server.proxy import ProxyServer, ProxyServerConfig


def _free_low_port():
    for port in range(7100, 8800):
        try:
            with socket.create_server(("localhost", port)):
                pass
        except OSError:
            continue
        return port
    raise RuntimeError("no free port below 8800")


def _wait_for(predicate, timeout=8.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


@pytest.fixture
def proxy(tmp_path):
    server = ProxyServer(
        ProxyServerConfig(
            host="localhost",
            port=str(_free_low_port()),
            timeout=5.0,
            database_path=str(tmp_path / "proxy.db"),
        )
    )
    server.start()
    yield server
    server.stop()


def test_fresh_proxy_has_empty_state(tmp_path):
    server = ProxyServer(
        ProxyServerConfig(host="localhost", port="8000", database_path=str(tmp_path / "p.db"))
    )
    try:
        server.health_check()
        state = server.get_proxy_state()
        assert state.clients == []
        assert state.game_servers == []
        assert state.sessions == []
        assert server.get_stats().total_connections == 0
    finally:
        server.stop()


def test_no_free_port_above_limit(tmp_path):
    server = ProxyServer(
        ProxyServerConfig(host="localhost", port="9000", database_path=str(tmp_path / "p.db"))
    )
    try:
        with pytest.raises(RuntimeError, match="no port available in the range 9001 to 9000"):
            server._get_free_port()
    finally:
        server.stop()


def test_invalid_port_is_rejected_when_searching(tmp_path):
    server = ProxyServer(
        ProxyServerConfig(host="localhost", port="abc", database_path=str(tmp_path / "p.db"))
    )
    try:
        with pytest.raises(ValueError):
            server._get_free_port()
    finally:
        server.stop()


def test_client_without_auth_token_is_rejected(proxy):
    log = with_component("test")
    with socket.create_connection(("localhost", int(proxy.port)), timeout=5) as sock:
        send_message(sock, "hello", log)
        msg, size = read_message(sock, log)
    assert msg == "AUTH_FAILED"
    assert size == len("AUTH_FAILED")
    assert _wait_for(lambda: proxy.get_proxy_state().clients == [])
    assert proxy.get_stats().total_connections == 1
    assert proxy.get_game_servers() == []


def test_second_client_reuses_running_game_server(proxy):
    first = Client(ClientConfig())
    second = Client(ClientConfig())
    first.connect("localhost", proxy.port)
    try:
        second.connect("localhost", proxy.port)
        try:
            assert len(proxy.get_game_servers()) == 1
            assert _wait_for(lambda: len(proxy.get_active_clients()) == 2)
        finally:
            second.close()
    finally:
        first.close()
    assert _wait_for(lambda: proxy.get_proxy_state().clients == [])
    assert proxy.get_stats().total_connections == 2