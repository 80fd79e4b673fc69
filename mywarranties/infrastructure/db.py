from __future__ import annotations

import sqlite3
import threading
from pathlib import Path

from mywarranties.bootstrap.settings import resolve_db_path

DEFAULT_BUSY_TIMEOUT_MS = 30000


def configure_sqlite_connection(connection: sqlite3.Connection, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
    connection.row_factory = sqlite3.Row
    connection.execute("PRAGMA journal_mode=WAL")
    connection.execute("PRAGMA synchronous=NORMAL")
    connection.execute("PRAGMA foreign_keys=ON")
    connection.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")


def get_connection(
    db_path: Path | None = None,
    *,
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    check_same_thread: bool = False,
) -> sqlite3.Connection:
    path = db_path or resolve_db_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    # isolation_level=None: las transacciones se abren explícitamente con transaction().
    connection = sqlite3.connect(
        path,
        check_same_thread=check_same_thread,
        timeout=max(1.0, busy_timeout_ms / 1000),
        isolation_level=None,
    )
    configure_sqlite_connection(connection, busy_timeout_ms=busy_timeout_ms)
    return connection


def get_memory_connection() -> sqlite3.Connection:
    connection = sqlite3.connect(":memory:", check_same_thread=False, isolation_level=None)
    connection.row_factory = sqlite3.Row
    return connection


_CONNECTION_LOCKS: dict[int, threading.RLock] = {}
_CONNECTION_LOCKS_GUARD = threading.Lock()


def connection_lock(connection: sqlite3.Connection) -> threading.RLock:
    """Lock compartido por todos los repositorios que usan la misma conexión.

    Una conexión sqlite3 tiene una única transacción activa; dos hilos que la
    usen a la vez mezclarían sus sentencias en la misma transacción.
    """
    with _CONNECTION_LOCKS_GUARD:
        lock = _CONNECTION_LOCKS.get(id(connection))
        if lock is None:
            lock = threading.RLock()
            _CONNECTION_LOCKS[id(connection)] = lock
        return lock
