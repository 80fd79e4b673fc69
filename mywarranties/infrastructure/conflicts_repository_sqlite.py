from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from typing import Any, Callable

from mywarranties.domain.models import ConflictEntry
from mywarranties.domain.ports import ConflictsRepository
from mywarranties.domain.time_utils import to_iso, utc_now
from mywarranties.infrastructure.db import connection_lock
from mywarranties.infrastructure.sqlite_uow import transaction

CONFLICT_REASONS = ("concurrent_edit", "rejected")


def _row_to_entry(row: sqlite3.Row) -> ConflictEntry:
    return ConflictEntry(
        id=row["id"],
        record_id=row["record_id"],
        reason=row["reason"],
        local_snapshot=json.loads(row["local_snapshot_json"] or "{}"),
        remote_snapshot=json.loads(row["remote_snapshot_json"] or "{}"),
        detected_at=row["detected_at"],
    )


class SQLiteConflictsRepository(ConflictsRepository):
    def __init__(self, connection: sqlite3.Connection, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._connection = connection
        self._connection_lock = connection_lock(connection)
        self._clock = clock

    def register(
        self,
        record_id: str,
        reason: str,
        local_snapshot: dict[str, Any],
        remote_snapshot: dict[str, Any],
    ) -> int:
        """Abre un conflicto; si ya hay uno abierto para el registro lo actualiza."""
        if reason not in CONFLICT_REASONS:
            raise ValueError(f"Motivo de conflicto desconocido: {reason}")
        local_json = json.dumps(local_snapshot, ensure_ascii=False, sort_keys=True)
        remote_json = json.dumps(remote_snapshot, ensure_ascii=False, sort_keys=True)
        detected_at = to_iso(self._clock())
        with self._connection_lock, transaction(self._connection) as connection:
            row = connection.execute(
                "SELECT id FROM sync_conflicts WHERE record_id = ? AND resolved_at IS NULL",
                (record_id,),
            ).fetchone()
            if row is not None:
                connection.execute(
                    """
                    UPDATE sync_conflicts
                    SET reason = ?, local_snapshot_json = ?, remote_snapshot_json = ?, detected_at = ?
                    WHERE id = ?
                    """,
                    (reason, local_json, remote_json, detected_at, row["id"]),
                )
                return int(row["id"])
            cursor = connection.execute(
                """
                INSERT INTO sync_conflicts (record_id, reason, local_snapshot_json, remote_snapshot_json, detected_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (record_id, reason, local_json, remote_json, detected_at),
            )
            return int(cursor.lastrowid)

    def refresh_remote_snapshot(self, record_id: str, remote_snapshot: dict[str, Any]) -> bool:
        with self._connection_lock, transaction(self._connection) as connection:
            cursor = connection.execute(
                "UPDATE sync_conflicts SET remote_snapshot_json = ? WHERE record_id = ? AND resolved_at IS NULL",
                (json.dumps(remote_snapshot, ensure_ascii=False, sort_keys=True), record_id),
            )
            return cursor.rowcount > 0

    def list_open(self) -> list[ConflictEntry]:
        with self._connection_lock:
            rows = self._connection.execute(
                """
                SELECT id, record_id, reason, local_snapshot_json, remote_snapshot_json, detected_at
                FROM sync_conflicts
                WHERE resolved_at IS NULL
                ORDER BY detected_at ASC, id ASC
                """
            ).fetchall()
        return [_row_to_entry(row) for row in rows]

    def get(self, conflict_id: int) -> ConflictEntry | None:
        with self._connection_lock:
            row = self._connection.execute(
                """
                SELECT id, record_id, reason, local_snapshot_json, remote_snapshot_json, detected_at
                FROM sync_conflicts
                WHERE id = ? AND resolved_at IS NULL
                """,
                (conflict_id,),
            ).fetchone()
        return _row_to_entry(row) if row is not None else None

    def count_open(self) -> int:
        with self._connection_lock:
            row = self._connection.execute(
                "SELECT COUNT(*) AS total FROM sync_conflicts WHERE resolved_at IS NULL"
            ).fetchone()
        return int(row["total"] if row else 0)

    def mark_resolved(self, conflict_id: int, resolution: str) -> None:
        with self._connection_lock, transaction(self._connection) as connection:
            connection.execute(
                "UPDATE sync_conflicts SET resolved_at = ?, resolution = ? WHERE id = ?",
                (to_iso(self._clock()), resolution, conflict_id),
            )
