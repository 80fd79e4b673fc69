from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class KeyedLocks:
    """Exclusión mutua por clave (id de registro), reentrante por hilo.

    Los locks se crean bajo demanda y se liberan del diccionario cuando nadie
    los usa, para no crecer con cada id visto.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}
        self._users: dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            self._users[key] = self._users.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                remaining = self._users[key] - 1
                if remaining:
                    self._users[key] = remaining
                else:
                    del self._users[key]
                    del self._locks[key]

    def active_keys(self) -> int:
        with self._guard:
            return len(self._locks)
