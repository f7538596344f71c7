import json
import sqlite3
import time

import pytest

from gameproxy.db.state_manager import ProxyState, StateManager
from gameproxy.prettylog import with_component

SEED_DATA = json.loads(
    """
{
  "name": "basic",
  "description": "two servers, three clients, two sessions",
  "game_servers": [
    {"host": "localhost", "port": "8081", "capacity": 10, "current_load": 2, "status": "running"},
    {"host": "localhost", "port": "8082", "capacity": 5, "current_load": 0, "status": "stopped"}
  ],
  "clients": [
    {"id": "client-1", "remote_addr": "127.0.0.1:50001", "status": "connected", "authenticated": false},
    {"id": "client-2", "remote_addr": "127.0.0.1:50002", "status": "connected", "authenticated": true},
    {"id": "client-3", "remote_addr": "127.0.0.1:50003", "status": "connected", "authenticated": false}
  ],
  "sessions": [
    {"client_id": "client-1", "game_server_id": 1, "status": "active"},
    {"client_id": "client-2", "game_server_id": 1, "status": "active"}
  ]
}
"""
)


@pytest.fixture
def manager(tmp_path):
    sm = StateManager(tmp_path / "state.db", with_component("test"))
    yield sm
    sm.stop()


def _seed(sm, data):
    sm.clear_all_state()
    for gs in data["game_servers"]:
        sm.create_game_server(
            gs["host"], gs["port"], gs["status"], gs["capacity"], gs["current_load"]
        )
    for client in data["clients"]:
        sm.create_client(client["id"], client["remote_addr"])
    for session in data.get("sessions", []):
        sm.create_proxy_session(session["client_id"], session["game_server_id"])


def test_seed_data_generation(manager):
    _seed(manager, SEED_DATA)
    assert len(manager.get_all_game_servers()) == len(SEED_DATA["game_servers"])
    assert len(manager.get_all_clients()) == len(SEED_DATA["clients"])
    assert len(manager.get_active_proxy_sessions()) == len(SEED_DATA["sessions"])
    assert manager.get_stats().total_connections == len(SEED_DATA["clients"])


def test_seed_data_game_server_fields(manager):
    _seed(manager, SEED_DATA)
    gs = manager.get_game_server_by_host_port("localhost", "8081")
    assert gs.capacity == 10
    assert gs.current_load == 2
    assert gs.status == "running"
    assert [s.port for s in manager.get_active_game_servers()] == ["8081"]


def test_create_client_defaults(manager):
    manager.create_client("abc", "10.0.0.1:1234")
    client = manager.get_client("abc")
    assert client.status == "connected"
    assert client.authenticated is False
    assert client.remote_addr == "10.0.0.1:1234"
    assert client.game_server_id is None
    assert manager.get_stats().total_connections == 1


def test_duplicate_client_raises(manager):
    manager.create_client("dup", "addr")
    with pytest.raises(sqlite3.DatabaseError, match="failed to create client"):
        manager.create_client("dup", "addr")


def test_client_lifecycle(manager):
    gs = manager.create_game_server("localhost", "9001", "running", 10, 0)
    manager.create_client("c1", "addr")
    manager.set_client_authenticated("c1", True)
    assert manager.get_client("c1").authenticated is True
    assert manager.get_active_clients() == []

    manager.assign_client_to_game_server("c1", gs.id)
    client = manager.get_client("c1")
    assert client.status == "proxying"
    assert client.game_server_id == gs.id
    assert [c.id for c in manager.get_active_clients()] == ["c1"]

    manager.update_client_status("c1", "auth_failed")
    assert manager.get_client("c1").status == "auth_failed"

    manager.remove_client("c1")
    assert manager.get_client("c1") is None


def test_update_client_activity_moves_forward(manager):
    manager.create_client("c1", "addr")
    before = manager.get_client("c1").last_activity
    time.sleep(0.01)
    manager.update_client_activity("c1")
    assert manager.get_client("c1").last_activity > before


def test_available_game_server_prefers_lowest_load(manager):
    busy = manager.create_game_server("localhost", "9001", "running", 10, 5)
    idle = manager.create_game_server("localhost", "9002", "running", 10, 1)
    manager.create_game_server("localhost", "9003", "stopped", 10, 0)
    assert manager.get_available_game_server().id == idle.id
    manager.remove_game_server(idle.id)
    assert manager.get_available_game_server().id == busy.id
    assert manager.get_game_server(idle.id) is None


def test_no_available_game_server_when_full(manager):
    gs = manager.create_game_server("localhost", "9001", "running", 1, 0)
    manager.increment_game_server_load(gs.id)
    assert manager.get_game_server(gs.id).current_load == 1
    assert manager.get_available_game_server() is None
    manager.decrement_game_server_load(gs.id)
    manager.decrement_game_server_load(gs.id)
    assert manager.get_game_server(gs.id).current_load == 0


def test_update_game_server_status(manager):
    gs = manager.create_game_server("localhost", "9001", "running", 10, 0)
    manager.update_game_server_status(gs.id, "error")
    assert manager.get_game_server(gs.id).status == "error"
    assert manager.get_active_game_servers() == []


def test_proxy_session_flow(manager):
    gs = manager.create_game_server("localhost", "9001", "running", 10, 0)
    manager.create_client("c1", "addr")
    session = manager.create_proxy_session("c1", gs.id)
    assert session.status == "active"
    assert manager.get_proxy_session_by_client("c1").id == session.id

    manager.update_proxy_session_traffic(session.id, 12, 34, 1, 2)
    loaded = manager.get_proxy_session(session.id)
    assert (loaded.bytes_up, loaded.bytes_down, loaded.messages_up, loaded.messages_down) == (
        12,
        34,
        1,
        2,
    )
    assert [s.id for s in manager.get_proxy_sessions_by_game_server(gs.id)] == [session.id]

    manager.end_proxy_session(session.id, "ended")
    assert manager.get_proxy_session(session.id).status == "ended"
    assert manager.get_proxy_session_by_client("c1") is None
    assert manager.get_active_proxy_sessions() == []


def test_refresh_stats(manager):
    gs = manager.create_game_server("localhost", "9001", "running", 10, 0)
    manager.create_game_server("localhost", "9002", "stopped", 10, 0)
    manager.create_client("c1", "addr")
    session = manager.create_proxy_session("c1", gs.id)
    manager.update_proxy_session_traffic(session.id, 12, 34, 1, 2)
    manager.refresh_stats()
    stats = manager.get_stats()
    assert stats.active_connections == 1
    assert stats.active_game_servers == 1
    assert stats.total_game_servers == 2
    assert (stats.total_bytes_up, stats.total_bytes_down) == (12, 34)
    assert (stats.total_messages_up, stats.total_messages_down) == (1, 2)


def test_full_state_snapshot(manager):
    _seed(manager, SEED_DATA)
    state = manager.get_full_state()
    assert isinstance(state, ProxyState)
    assert {c.id for c in state.clients} == {c["id"] for c in SEED_DATA["clients"]}
    assert len(state.game_servers) == len(SEED_DATA["game_servers"])
    assert len(state.sessions) == len(SEED_DATA["sessions"])
    assert state.stats.total_connections == len(SEED_DATA["clients"])


def test_clear_all_state(manager):
    _seed(manager, SEED_DATA)
    manager.clear_all_state()
    assert manager.get_all_clients() == []
    assert manager.get_all_game_servers() == []
    assert manager.get_active_proxy_sessions() == []
    assert manager.get_stats().total_connections == 0


def test_background_refresh_updates_stats(tmp_path):
    sm = StateManager(tmp_path / "state.db")
    sm.stats_refresh_interval = 0.02
    sm.create_client("c1", "addr")
    sm.start()
    try:
        deadline = time.monotonic() + 5
        while sm.get_stats().active_connections != 1 and time.monotonic() < deadline:
            time.sleep(0.02)
        assert sm.get_stats().active_connections == 1
    finally:
        sm.stop()


def test_stop_closes_database(tmp_path):
    sm = StateManager(tmp_path / "state.db")
    sm.health_check()
    sm.stop()
    with pytest.raises(sqlite3.ProgrammingError):
        sm.health_check()


def test_invalid_path_raises(tmp_path):
    with pytest.raises(sqlite3.OperationalError, match="failed to create database"):
        StateManager(tmp_path / "missing" / "dir" / "state.db")