"""Command-line entry point: a simple walkthrough or a simulation with many clients."""

from __future__ import annotations

import logging
import random
import signal
import sqlite3
import sys
import threading
import time
from dataclasses import dataclass

from .client import Client, ClientConfig, ClientError
from .prettylog import install, with_component
from .server.proxy import ProxyServer, ProxyServerConfig

HOST = "localhost"
PORT = "8080"
DEFAULT_TIMEOUT = 30.0
SIMULATION_DB = "./simulation_proxy.db"
SIMULATION_CLIENTS = 100
BATCH_SIZE = 50

# Random delays as half-open ranges in milliseconds.
START_OFFSET_MS = (0, 100)
SEND_DELAY_MS = (500, 2500)
LINGER_MS = (5000, 8000)

_log = with_component("main")


@dataclass
class ErrorReport:
    """A client of the simulation that failed, and why."""

    client: int
    error: Exception

    def __str__(self) -> str:
        return f"Client {self.client} had error {self.error}"


def _pause(bounds: tuple[int, int]) -> None:
    time.sleep(random.randrange(*bounds) / 1000)


def _start_proxy(database_path: str = "") -> ProxyServer | None:
    try:
        proxy = ProxyServer(
            ProxyServerConfig(
                host=HOST, port=PORT, timeout=DEFAULT_TIMEOUT, database_path=database_path
            )
        )
    except sqlite3.Error as err:
        _log.error("failed to start server", error=err)
        return None
    try:
        proxy.start()
    except OSError as err:
        _log.error("failed to start server", error=err)
        proxy.stop()
        return None
    return proxy


def _wait_for_signal() -> str:
    received: list[str] = []
    done = threading.Event()

    def on_signal(signum, _frame) -> None:
        received.append(signal.Signals(signum).name)
        done.set()

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[signum] = signal.signal(signum, on_signal)
        except ValueError:
            pass
    try:
        while not done.wait(0.5):
            pass
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)
    return received[0]


def simple_test() -> int:
    """Run one client through the proxy, then wait for an interrupt."""
    install(logging.DEBUG)
    _log.info("starting reverse proxy")
    proxy = _start_proxy()
    if proxy is None:
        return 1

    client = Client(ClientConfig(name="John Smith"))
    try:
        client.connect(HOST, PORT)
    except ClientError as err:
        _log.error("failed to connect client to server", error=err)

    def chatter() -> None:
        script = (
            (0.1, "Some test data"),
            (0.0, "Something else"),
            (8.0, "Another one"),
            (7.0, "Last message"),
        )
        for delay, msg in script:
            time.sleep(delay)
            try:
                client.send(msg)
            except (ClientError, OSError, ValueError) as err:
                _log.error("client failed to send message", message=msg, error=err)

    threading.Thread(target=chatter, name="simple-chatter", daemon=True).start()

    time.sleep(5)
    client.close()

    sig = _wait_for_signal()
    _log.info("received signal shutting down", signal=sig)
    proxy.stop()
    return 0


def run_simulation() -> list[ErrorReport]:
    """Start a proxy and run many clients against it; return the clients' errors."""
    install(logging.DEBUG)
    proxy = _start_proxy(SIMULATION_DB)
    if proxy is None:
        _log.error("can't start proxy")
        return []
    try:
        time.sleep(1)
        return spawn_clients(SIMULATION_CLIENTS)
    finally:
        proxy.stop()


def spawn_clients(amount: int) -> list[ErrorReport]:
    """Run ``amount`` clients concurrently in batches and collect their errors."""
    config = ClientConfig(name="John Smith")
    reports: list[ErrorReport] = []
    lock = threading.Lock()

    def worker(index: int) -> None:
        _pause(START_OFFSET_MS)
        report = run_client(index, config)
        if report is not None:
            with lock:
                reports.append(report)

    for batch_start in range(0, amount, BATCH_SIZE):
        batch = range(batch_start, min(batch_start + BATCH_SIZE, amount))
        threads = [threading.Thread(target=worker, args=(index,), daemon=True) for index in batch]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

    if reports:
        _log.warning("finished with client errors", errors=[str(r) for r in reports])
    else:
        _log.info("finished with no client errors")
    return reports


def run_client(client_id: int, config: ClientConfig) -> ErrorReport | None:
    """Connect one client, send three messages and disconnect."""
    client = Client(config)
    try:
        client.connect(HOST, PORT)
    except ClientError:
        _log.error("client connection failed", id=client_id)

    messages = (
        f"Hello from client {client_id}",
        f"Message 2 from client {client_id}",
        f"Final message from client {client_id}",
    )
    for msg in messages:
        _pause(SEND_DELAY_MS)
        try:
            client.send(msg)
        except (ClientError, OSError, ValueError) as err:
            _log.error("client failed to send message", id=client_id, message=msg)
            client.close()
            return ErrorReport(client=client_id, error=err)

    _pause(LINGER_MS)
    client.close()
    _log.info("client gracefully shut down", id=client_id)
    return None


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if args and args[0] == "simple":
        _log.info("Running simple test of components")
        return simple_test()

    _log.info("Starting real simulation")
    reports = run_simulation()
    return 1 if reports else 0


if __name__ == "__main__":
    sys.exit(main())