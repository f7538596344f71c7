import sqlite3

import pytest

from gameproxy.db.client_repository import ClientRepository
from gameproxy.db.database import Database
from gameproxy.db.models import ClientRecord


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "clients.db")
    yield database
    database.close()


@pytest.fixture
def repo(db):
    return ClientRepository(db)


def _game_server(db, port="8081"):
    return db.execute(
        "INSERT INTO game_servers (host, port, capacity, status) VALUES (?, ?, ?, ?)",
        ("localhost", port, 10, "running"),
    ).lastrowid


def _client(client_id, status="connected", remote_addr="127.0.0.1:40000"):
    return ClientRecord(id=client_id, status=status, remote_addr=remote_addr)


def test_create_stamps_times_and_round_trips(repo):
    client = _client("alpha")
    repo.create(client)

    assert client.connected_at is not None
    assert client.connected_at == client.updated_at == client.last_activity

    stored = repo.get_by_id("alpha")
    assert stored == client
    assert stored.authenticated is False
    assert stored.game_server_id is None


def test_get_by_id_missing_returns_none(repo):
    assert repo.get_by_id("nobody") is None


def test_create_duplicate_raises(repo):
    repo.create(_client("dup"))
    with pytest.raises(sqlite3.DatabaseError, match="failed to create client"):
        repo.create(_client("dup"))


def test_get_by_status_filters(repo):
    repo.create(_client("a", status="connected"))
    repo.create(_client("b", status="authenticated"))
    repo.create(_client("c", status="connected"))

    assert {c.id for c in repo.get_by_status("connected")} == {"a", "c"}
    assert [c.id for c in repo.get_by_status("authenticated")] == ["b"]
    assert repo.get_by_status("proxying") == []


def test_get_all_orders_newest_first(repo):
    for name in ("first", "second", "third"):
        repo.create(_client(name))

    clients = repo.get_all()
    assert {c.id for c in clients} == {"first", "second", "third"}
    times = [c.connected_at for c in clients]
    assert times == sorted(times, reverse=True)


def test_assign_to_game_server(db, repo):
    server_id = _game_server(db)
    repo.create(_client("player"))
    repo.assign_to_game_server("player", server_id)

    stored = repo.get_by_id("player")
    assert stored.status == "proxying"
    assert stored.game_server_id == server_id
    assert [c.id for c in repo.get_by_game_server_id(server_id)] == ["player"]
    assert repo.count_by_game_server(server_id) == 1


def test_count_by_game_server_ignores_other_statuses(db, repo):
    server_id = _game_server(db)
    repo.create(ClientRecord(id="x", game_server_id=server_id, status="authenticated", remote_addr="a"))
    repo.create(ClientRecord(id="y", game_server_id=server_id, status="disconnected", remote_addr="b"))
    repo.create(ClientRecord(id="z", game_server_id=server_id, status="proxying", remote_addr="c"))

    assert repo.count_by_game_server(server_id) == 2
    assert len(repo.get_by_game_server_id(server_id)) == 3


def test_count_active(repo):
    repo.create(_client("one", status="connected"))
    repo.create(_client("two", status="authenticated"))
    repo.create(_client("three", status="proxying"))
    repo.create(_client("four", status="disconnected"))
    assert repo.count_active() == 3

    repo.update_status("one", "disconnected")
    assert repo.count_active() == 2
    assert repo.get_by_id("one").status == "disconnected"


def test_update_authenticated(repo):
    repo.create(_client("auth"))
    repo.update_authenticated("auth", True)
    assert repo.get_by_id("auth").authenticated is True
    repo.update_authenticated("auth", False)
    assert repo.get_by_id("auth").authenticated is False


def test_update_writes_fields_and_touches_activity(db, repo):
    server_id = _game_server(db)
    client = _client("upd")
    repo.create(client)
    created_activity = client.last_activity

    client.status = "authenticated"
    client.authenticated = True
    client.game_server_id = server_id
    repo.update(client)

    stored = repo.get_by_id("upd")
    assert stored.status == "authenticated"
    assert stored.authenticated is True
    assert stored.game_server_id == server_id
    assert stored.last_activity == client.last_activity
    assert stored.last_activity >= created_activity
    assert stored.connected_at == created_activity


def test_update_activity_moves_forward(repo):
    client = _client("active")
    repo.create(client)
    repo.update_activity("active")
    assert repo.get_by_id("active").last_activity >= client.last_activity


def test_delete_removes_client(repo):
    repo.create(_client("gone"))
    repo.delete("gone")
    assert repo.get_by_id("gone") is None
    assert repo.get_all() == []


def test_operations_on_closed_database_raise(tmp_path):
    database = Database(tmp_path / "closed.db")
    repository = ClientRepository(database)
    database.close()

    with pytest.raises(sqlite3.DatabaseError, match="failed to count active clients"):
        repository.count_active()
    with pytest.raises(sqlite3.DatabaseError, match="failed to delete client"):
        repository.delete("any")