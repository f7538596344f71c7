import threading

from gameproxy.netutils.connection import ConnectionManager


def test_new_manager_is_empty():
    manager = ConnectionManager(3)
    assert manager.count() == 0
    assert manager.has_capacity() is True


def test_capacity_is_reached_after_filling():
    manager = ConnectionManager(3)
    for _ in range(3):
        manager.increment()
    assert manager.count() == 3
    assert manager.has_capacity() is False


def test_decrement_frees_capacity():
    manager = ConnectionManager(2)
    manager.increment()
    manager.increment()
    manager.decrement()
    assert manager.count() == 1
    assert manager.has_capacity() is True


def test_decrement_never_goes_below_zero():
    manager = ConnectionManager(2)
    manager.decrement()
    manager.decrement()
    assert manager.count() == 0


def test_zero_capacity_never_has_capacity():
    manager = ConnectionManager(0)
    assert manager.has_capacity() is False


def test_concurrent_increments_are_not_lost():
    manager = ConnectionManager(10_000)
    workers, per_worker = 8, 200

    def work():
        for _ in range(per_worker):
            manager.increment()

    threads = [threading.Thread(target=work) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert manager.count() == workers * per_worker