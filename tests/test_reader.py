import queue
import socket
import threading
import time

import pytest

from gameproxy.netutils.framing import send_message
from gameproxy.netutils.reader import MessageReader, listen_for_messages


@pytest.fixture
def pair():
    left, right = socket.socketpair()
    yield left, right
    left.close()
    right.close()


def _drain(messages, limit=5.0):
    received = []
    while True:
        item = messages.get(timeout=limit)
        if item is None:
            return received
        received.append(item)


def test_reads_messages_until_peer_closes(pair):
    left, right = pair
    sent = ["alpha", "beta", "gamma"]
    for msg in sent:
        send_message(left, msg)
    left.close()

    messages = queue.Queue()
    MessageReader(right, 1.0, None).listen(threading.Event(), messages)
    assert _drain(messages) == sent


def test_listen_for_messages_reads_all_then_ends(pair):
    left, right = pair
    send_message(left, "one")
    send_message(left, "two")
    left.close()

    messages = queue.Queue()
    listen_for_messages(threading.Event(), right, messages, 2.0, None)

    assert messages.get_nowait() == "one"
    assert messages.get_nowait() == "two"
    assert messages.get_nowait() is None
    assert messages.empty()


def test_stop_before_start_only_puts_end_marker(pair):
    _, right = pair
    stop = threading.Event()
    stop.set()
    messages = queue.Queue()
    MessageReader(right, 1.0, None).listen(stop, messages)
    assert messages.get_nowait() is None
    assert messages.empty()


def test_read_timeout_ends_listening(pair):
    _, right = pair
    messages = queue.Queue()
    started = time.monotonic()
    MessageReader(right, 0.1, None).listen(threading.Event(), messages)
    assert time.monotonic() - started < 5
    assert messages.get_nowait() is None


def test_stop_while_queue_is_full_does_not_block(pair):
    left, right = pair
    send_message(left, "first")
    send_message(left, "second")
    messages = queue.Queue(maxsize=1)
    stop = threading.Event()
    worker = threading.Thread(
        target=MessageReader(right, 1.0, None).listen, args=(stop, messages)
    )
    worker.start()

    deadline = time.monotonic() + 5
    while not messages.full() and time.monotonic() < deadline:
        time.sleep(0.01)
    stop.set()
    worker.join(timeout=5)

    assert not worker.is_alive()
    assert messages.get_nowait() == "first"
    assert messages.empty()