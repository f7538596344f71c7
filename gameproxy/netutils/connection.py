"""Thread-safe counter of open connections against a fixed capacity."""

from __future__ import annotations

import threading

_UINT16_MASK = 0xFFFF


class ConnectionManager:
    """Counts connections as a 16-bit value and reports remaining capacity."""

    def __init__(self, capacity: int) -> None:
        self._lock = threading.Lock()
        self._connections = 0
        self._capacity = capacity & _UINT16_MASK

    def increment(self) -> None:
        with self._lock:
            self._connections = (self._connections + 1) & _UINT16_MASK

    def decrement(self) -> None:
        with self._lock:
            if self._connections > 0:
                self._connections -= 1

    def has_capacity(self) -> bool:
        with self._lock:
            return self._connections < self._capacity

    def count(self) -> int:
        with self._lock:
            return self._connections