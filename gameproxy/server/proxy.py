"""The reverse proxy: authenticates clients and relays their messages to game servers."""

from __future__ import annotations

import queue
import random
import socket
import sqlite3
import threading
import time
import uuid
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path

from ..db.models import ClientRecord, GameServerRecord, ProxyStats
from ..db.state_manager import ProxyState, StateManager
from ..netutils.framing import forward_msg
from ..netutils.reader import listen_for_messages
from ..prettylog import with_component
from .auth import (
    AuthError,
    ClientInfo,
    complete_authentication,
    handle_game_server_auth,
    handle_init_auth,
)
from .game import GameServer, GameServerConfig
from .tcp import TCPServer

DEFAULT_CAPACITY = 10
MAX_GS_PORT = 9000
AUTH_TIMEOUT = 30.0
DB_WORKERS = 3
DB_QUEUE_SIZE = 100
BATCH_MESSAGES = 3
BATCH_JITTER_SECONDS = (5.0, 15.0)

_CLIENT_QUEUE_SIZE = 10
_GS_QUEUE_SIZE = 20
_POLL_SECONDS = 0.1


@dataclass
class ProxyServerConfig:
    """Where the proxy listens, its I/O timeout in seconds and its database file."""

    host: str
    port: str
    timeout: float = 0.0
    database_path: str = ""


@dataclass(frozen=True)
class _TrafficJob:
    session_id: int
    bytes_up: int
    bytes_down: int
    messages_up: int
    messages_down: int


def _close(conn: socket.socket | None) -> None:
    if conn is None:
        return
    with suppress(OSError):
        conn.shutdown(socket.SHUT_RDWR)
    with suppress(OSError):
        conn.close()


def _remote_addr(conn: socket.socket) -> str:
    try:
        host, port = conn.getpeername()[:2]
    except OSError:
        return "unknown"
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


class ProxyServer:
    """Accepts clients, authenticates them and proxies them to a game server with room."""

    def __init__(self, config: ProxyServerConfig) -> None:
        self._logger = with_component("proxy")
        self.host = config.host
        self.port = config.port
        self.timeout = config.timeout
        self.auth_timeout = AUTH_TIMEOUT
        self._tcp = TCPServer(config.host, config.port, self._logger)

        db_path = config.database_path
        if not db_path:
            path = Path("./proxydatabases") / f"proxy_{int(time.time())}.db"
            path.parent.mkdir(parents=True, exist_ok=True)
            db_path = str(path)
        try:
            self._state = StateManager(db_path, self._logger)
        except sqlite3.Error as err:
            self._logger.error("failed to create state manager", error=err)
            raise

        self._clients: dict[str, ClientInfo] = {}
        self._lock = threading.Lock()
        self._gs_lock = threading.Lock()
        self._game_servers: list[GameServer] = []
        self._jobs: queue.Queue = queue.Queue(maxsize=DB_QUEUE_SIZE)
        self._workers: list[threading.Thread] = []
        self._start_db_workers()

    # Lifecycle

    def start(self) -> None:
        """Start the statistics refresher and listen for clients."""
        self._state.start()
        try:
            self._tcp.start(self)
        except OSError as err:
            raise OSError(f"failed to start tcp server: {err}") from err
        address = self._tcp.address
        if address is not None:
            self.port = str(address[1])

    def stop(self) -> None:
        """Stop listening, drain pending traffic updates and close the database."""
        self._tcp.close()
        for _ in self._workers:
            self._jobs.put(None)
        for worker in self._workers:
            worker.join()
        self._workers = []
        with self._gs_lock:
            servers, self._game_servers = self._game_servers, []
        for server in servers:
            server.close()
        self._state.stop()

    def _start_db_workers(self) -> None:
        for number in range(DB_WORKERS):
            worker = threading.Thread(
                target=self._db_update_worker, name=f"db-worker-{number}", daemon=True
            )
            worker.start()
            self._workers.append(worker)

    def _db_update_worker(self) -> None:
        for job in iter(self._jobs.get, None):
            try:
                self._state.update_proxy_session_traffic(
                    job.session_id,
                    job.bytes_up,
                    job.bytes_down,
                    job.messages_up,
                    job.messages_down,
                )
            except sqlite3.Error as err:
                self._logger.error("failed to update session traffic", error=err)

    # Connections

    def handle_connection(self, conn: socket.socket) -> None:
        """Serve one client from authentication to the end of its session."""
        client_id = str(uuid.uuid4())
        client = ClientInfo(id=client_id, conn=conn)
        try:
            try:
                self._state.create_client(client_id, _remote_addr(conn))
            except sqlite3.Error as err:
                self._logger.error("failed to create client in database", error=err)
                return

            with self._lock:
                self._clients[client_id] = client
            try:
                self._serve_client(client)
            finally:
                self._cleanup_client(client)
        finally:
            _close(conn)

    def _cleanup_client(self, client: ClientInfo) -> None:
        self._logger.info("closing connections")
        with self._lock:
            self._clients.pop(client.id, None)
            _close(client.gs_conn)

        try:
            stats = self._state.get_stats()
        except sqlite3.Error:
            self._logger.debug("cannot get stats")
            stats = None
        self._logger.info("proxy stats", stats=stats)

        try:
            self._state.remove_client(client.id)
        except sqlite3.Error as err:
            self._logger.error("failed to remove client from database", error=err)

    def _set_status(self, client_id: str, status: str) -> None:
        with suppress(sqlite3.Error):
            self._state.update_client_status(client_id, status)

    def _serve_client(self, client: ClientInfo) -> None:
        try:
            proxy_result = handle_init_auth(client, self.auth_timeout, self.timeout, self._logger)
        except AuthError as err:
            self._logger.error("failed proxy authentication", error=err, result=err.result)
            self._set_status(client.id, "auth_failed")
            return

        try:
            self._state.set_client_authenticated(client.id, True)
        except sqlite3.Error as err:
            self._logger.error("failed to update client authentication status", error=err)
            return

        try:
            self._establish_gs_connection(client)
        except (RuntimeError, OSError, ValueError, sqlite3.Error) as err:
            self._logger.error("failed to establish game server connection", error=err)
            self._set_status(client.id, "gs_connection_failed")
            return

        try:
            gs_result = handle_game_server_auth(client, client.gs_conn, self.timeout, self._logger)
        except AuthError as err:
            self._logger.error("failed game server authentication", error=err, result=err.result)
            self._set_status(client.id, "gs_auth_failed")
            return

        try:
            complete_authentication(client, self._logger)
        except (OSError, ValueError) as err:
            self._logger.error("failed to complete authentication", error=err)
            return

        self._logger.info(
            "full authentication successful",
            client=client.id,
            proxyAuth=proxy_result.success,
            gsAuth=gs_result.success,
        )

        try:
            session = self._state.create_proxy_session(client.id, client.gs_id)
        except sqlite3.Error as err:
            self._logger.error("failed to create proxy session", error=err)
            return
        client.session_id = session.id

        try:
            self._state.increment_game_server_load(client.gs_id)
        except sqlite3.Error as err:
            self._logger.error("failed to increment game server load", error=err)

        try:
            self._start_bidirectional_proxy(client)
        finally:
            try:
                self._state.decrement_game_server_load(client.gs_id)
            except sqlite3.Error as err:
                self._logger.error("failed to decrement game server load", error=err)
            try:
                self._state.end_proxy_session(client.session_id, "ended")
            except sqlite3.Error as err:
                self._logger.error("failed to end proxy session", error=err)

    def _establish_gs_connection(self, client: ClientInfo) -> None:
        with self._gs_lock:
            try:
                record = self._state.get_available_game_server()
            except sqlite3.Error as err:
                raise RuntimeError(f"failed to query available game servers: {err}") from err
            if record is None:
                try:
                    record = self._start_new_game_server()
                except (RuntimeError, OSError, ValueError, sqlite3.Error) as err:
                    raise RuntimeError(f"failed to start new game server: {err}") from err

        self._logger.info(
            "game server is ready", id=record.id, host=record.host, port=record.port
        )
        try:
            gs_conn = socket.create_connection(
                (record.host, int(record.port)), timeout=self.timeout or None
            )
        except OSError as err:
            raise RuntimeError(f"failed to connect to game server: {err}") from err

        client.gs_conn = gs_conn
        client.gs_id = record.id

        try:
            self._state.assign_client_to_game_server(client.id, record.id)
        except sqlite3.Error as err:
            raise RuntimeError(f"failed to assign client to game server: {err}") from err

    def _start_new_game_server(self) -> GameServerRecord:
        self._logger.info("starting new game server")
        try:
            port = self._get_free_port()
        except (RuntimeError, ValueError) as err:
            raise RuntimeError(f"failed to get free port: {err}") from err

        server = GameServer(
            GameServerConfig(
                host="localhost", port=port, capacity=DEFAULT_CAPACITY, timeout=self.timeout
            )
        )
        try:
            server.start()
        except OSError as err:
            raise RuntimeError(f"failed to start game server: {err}") from err
        self._game_servers.append(server)

        try:
            return self._state.create_game_server(
                server.host, server.port, "running", server.capacity, server.current_load()
            )
        except sqlite3.Error as err:
            raise RuntimeError(f"failed to create game server record: {err}") from err

    def _get_free_port(self) -> str:
        start_port = int(self.port)
        for port in range(start_port + 1, MAX_GS_PORT + 1):
            try:
                with socket.create_server((self.host, port)):
                    pass
            except OSError:
                continue
            self._logger.info("found free port", port=str(port))
            return str(port)
        raise RuntimeError(
            f"no port available in the range {start_port + 1} to {MAX_GS_PORT}"
        )

    # Relaying

    def _start_bidirectional_proxy(self, client: ClientInfo) -> None:
        stop = threading.Event()

        def run(direction) -> None:
            try:
                direction(stop, client)
            finally:
                stop.set()

        threads = [
            threading.Thread(target=run, args=(self._handle_client_communication,), daemon=True),
            threading.Thread(target=run, args=(self._handle_gs_communication,), daemon=True),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self._logger.info("proxy session ended", client=client.id)

    def _next_message(self, stop: threading.Event, messages: queue.Queue):
        """Return the next message, None when the reader ended, or False once stopped."""
        while True:
            try:
                return messages.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                if stop.is_set():
                    return False

    def _forward_quietly(self, conn, msg: str) -> None:
        with suppress(OSError, ValueError):
            forward_msg(conn, msg, self.timeout, self._logger)

    def _handle_client_communication(self, stop: threading.Event, client: ClientInfo) -> None:
        messages: queue.Queue = queue.Queue(maxsize=_CLIENT_QUEUE_SIZE)
        threading.Thread(
            target=listen_for_messages,
            args=(stop, client.conn, messages, self.timeout, self._logger),
            daemon=True,
        ).start()

        while True:
            msg = self._next_message(stop, messages)
            if msg is False:
                self._logger.info("client communication stopped", reason="context cancelled")
                return
            if msg is None:
                self._logger.info("client channel closed")
                self._forward_quietly(client.gs_conn, "client connection closed")
                return
            if msg == "":
                self._logger.warning("received empty messages from client")
                continue

            try:
                self._state.update_client_activity(client.id)
            except sqlite3.Error as err:
                self._logger.error("failed to update client activity", error=err)

            try:
                forward_msg(client.gs_conn, msg, self.timeout, self._logger)
            except (OSError, ValueError) as err:
                self._logger.error("failed to forward to gs", error=err)
                self._forward_quietly(
                    client.conn, "failed to forward to gs - aborting connection"
                )
                return

            self._update_traffic_batched(client, len(msg), 0, 1, 0)

    def _handle_gs_communication(self, stop: threading.Event, client: ClientInfo) -> None:
        messages: queue.Queue = queue.Queue(maxsize=_GS_QUEUE_SIZE)
        threading.Thread(
            target=listen_for_messages,
            args=(stop, client.gs_conn, messages, self.timeout, self._logger),
            daemon=True,
        ).start()

        while True:
            msg = self._next_message(stop, messages)
            if msg is False:
                self._logger.info("gs communication stopped", reason="context cancelled")
                return
            if msg is None:
                self._logger.info("gs channel closed")
                self._forward_quietly(client.conn, "gs connection closed")
                return
            if msg == "":
                self._logger.warning("received empty messages from game server")
                continue

            try:
                forward_msg(client.conn, msg, self.timeout, self._logger)
            except (OSError, ValueError) as err:
                self._logger.error("failed to forward to client", error=err)
                self._forward_quietly(
                    client.gs_conn, "failed forwarding msg to client - aborting connection"
                )
                return

            self._update_traffic_batched(client, 0, len(msg), 0, 1)

    def _update_traffic_batched(
        self,
        client: ClientInfo,
        bytes_up: int,
        bytes_down: int,
        messages_up: int,
        messages_down: int,
    ) -> None:
        """Queue a traffic update every few messages or after a jittered interval."""
        with client.traffic_lock:
            client.bytes_up += bytes_up
            client.bytes_down += bytes_down
            client.messages_up += messages_up
            client.messages_down += messages_down

            now = time.monotonic()
            if client.last_update is None:
                client.last_update = now

            jitter = random.uniform(*BATCH_JITTER_SECONDS)
            due = (
                client.messages_up + client.messages_down >= BATCH_MESSAGES
                or now - client.last_update >= jitter
            )
            if not due:
                return

            job = _TrafficJob(
                client.session_id,
                client.bytes_up,
                client.bytes_down,
                client.messages_up,
                client.messages_down,
            )
            client.bytes_up = client.bytes_down = 0
            client.messages_up = client.messages_down = 0
            client.last_update = now

        try:
            self._jobs.put_nowait(job)
        except queue.Full:
            self._logger.warning("database update queue full, skipping update")

    # Inspection

    def get_proxy_state(self) -> ProxyState:
        return self._state.get_full_state()

    def get_stats(self) -> ProxyStats:
        return self._state.get_stats()

    def get_active_clients(self) -> list[ClientRecord]:
        return self._state.get_active_clients()

    def get_game_servers(self) -> list[GameServerRecord]:
        return self._state.get_all_game_servers()

    def refresh_stats(self) -> None:
        self._state.refresh_stats()

    def health_check(self) -> None:
        self._state.health_check()