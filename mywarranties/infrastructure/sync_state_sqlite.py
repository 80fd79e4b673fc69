from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import Callable

from mywarranties.domain.ports import SyncStateStore
from mywarranties.domain.time_utils import to_iso, utc_now
from mywarranties.infrastructure.db import connection_lock
from mywarranties.infrastructure.sqlite_uow import transaction

CURSOR_KEY = "remote_cursor"


class SQLiteSyncStateStore(SyncStateStore):
    """Pares clave/valor de la tabla ``sync_state``: cursor remoto y suelo de generación."""

    def __init__(self, connection: sqlite3.Connection, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._connection = connection
        self._connection_lock = connection_lock(connection)
        self._clock = clock

    def load_cursor(self) -> str | None:
        return self.get_value(CURSOR_KEY)

    def save_cursor(self, cursor: str | None) -> None:
        if cursor is None:
            return
        self.set_value(CURSOR_KEY, cursor)

    def get_value(self, key: str) -> str | None:
        with self._connection_lock:
            row = self._connection.execute("SELECT value FROM sync_state WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return row["value"]

    def set_value(self, key: str, value: str) -> None:
        with self._connection_lock, transaction(self._connection) as connection:
            connection.execute(
                """
                INSERT INTO sync_state (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, value, to_iso(self._clock())),
            )
