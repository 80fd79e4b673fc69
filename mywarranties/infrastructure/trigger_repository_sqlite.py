from __future__ import annotations

import sqlite3
from datetime import datetime

from mywarranties.core.errors import PersistenceError
from mywarranties.domain.models import ReminderTrigger, TriggerState
from mywarranties.domain.ports import TriggerRepository
from mywarranties.domain.time_utils import parse_date, parse_iso, to_iso
from mywarranties.infrastructure.db import connection_lock
from mywarranties.infrastructure.sqlite_uow import transaction

_SELECT_COLUMNS = "record_id, fire_at, expiration_date, generation, fired, state, fired_at"


def _row_to_trigger(row: sqlite3.Row) -> ReminderTrigger:
    try:
        fire_at = parse_iso(row["fire_at"])
        expiration_date = parse_date(row["expiration_date"])
        if fire_at is None or expiration_date is None:
            raise ValueError("fire_at/expiration_date vacíos")
        return ReminderTrigger(
            record_id=row["record_id"],
            fire_at=fire_at,
            expiration_date=expiration_date,
            generation=int(row["generation"]),
            fired=bool(row["fired"]),
            state=TriggerState(row["state"]),
            fired_at=parse_iso(row["fired_at"]),
        )
    except (TypeError, ValueError) as exc:
        raise PersistenceError(f"Fila corrupta en reminder_triggers ({row['record_id']}): {exc}") from exc


class SQLiteTriggerRepository(TriggerRepository):
    """Filas de ``reminder_triggers``; una por ``record_id``."""

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._connection = connection
        self._connection_lock = connection_lock(connection)

    def get(self, record_id: str) -> ReminderTrigger | None:
        with self._connection_lock:
            row = self._connection.execute(
                f"SELECT {_SELECT_COLUMNS} FROM reminder_triggers WHERE record_id = ?", (record_id,)
            ).fetchone()
        return _row_to_trigger(row) if row is not None else None

    def list_all(self) -> list[ReminderTrigger]:
        with self._connection_lock:
            rows = self._connection.execute(
                f"SELECT {_SELECT_COLUMNS} FROM reminder_triggers ORDER BY fire_at ASC, record_id ASC"
            ).fetchall()
        return [_row_to_trigger(row) for row in rows]

    def list_due(self, now: datetime) -> list[ReminderTrigger]:
        with self._connection_lock:
            rows = self._connection.execute(
                f"""
                SELECT {_SELECT_COLUMNS} FROM reminder_triggers
                WHERE state = ? AND fired = 0 AND fire_at <= ?
                ORDER BY fire_at ASC, record_id ASC
                """,
                (TriggerState.SCHEDULED.value, to_iso(now)),
            ).fetchall()
        return [_row_to_trigger(row) for row in rows]

    def save(self, trigger: ReminderTrigger) -> None:
        with self._connection_lock, transaction(self._connection) as connection:
            connection.execute(
                """
                INSERT INTO reminder_triggers (record_id, fire_at, expiration_date, generation, fired, state, fired_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(record_id) DO UPDATE SET
                    fire_at = excluded.fire_at,
                    expiration_date = excluded.expiration_date,
                    generation = excluded.generation,
                    fired = excluded.fired,
                    state = excluded.state,
                    fired_at = excluded.fired_at
                """,
                (
                    trigger.record_id,
                    to_iso(trigger.fire_at),
                    trigger.expiration_date.isoformat(),
                    trigger.generation,
                    1 if trigger.fired else 0,
                    trigger.state.value,
                    to_iso(trigger.fired_at),
                ),
            )

    def mark_fired_if_current(self, record_id: str, generation: int, fired_at: datetime) -> bool:
        """Compare-and-set: solo marca si la fila sigue en esa generación sin disparar."""
        with self._connection_lock, transaction(self._connection) as connection:
            cursor = connection.execute(
                """
                UPDATE reminder_triggers
                SET fired = 1, state = ?, fired_at = ?
                WHERE record_id = ? AND generation = ? AND fired = 0 AND state = ?
                """,
                (TriggerState.FIRED.value, to_iso(fired_at), record_id, generation, TriggerState.SCHEDULED.value),
            )
            return cursor.rowcount == 1

    def revert_fired(self, record_id: str, generation: int) -> None:
        with self._connection_lock, transaction(self._connection) as connection:
            connection.execute(
                """
                UPDATE reminder_triggers
                SET fired = 0, state = ?, fired_at = NULL
                WHERE record_id = ? AND generation = ? AND state = ?
                """,
                (TriggerState.SCHEDULED.value, record_id, generation, TriggerState.FIRED.value),
            )

    def delete_all(self) -> None:
        with self._connection_lock, transaction(self._connection) as connection:
            connection.execute("DELETE FROM reminder_triggers")

    def max_generation(self) -> int:
        with self._connection_lock:
            row = self._connection.execute(
                "SELECT COALESCE(MAX(generation), 0) AS generation FROM reminder_triggers"
            ).fetchone()
        try:
            return int(row["generation"])
        except (TypeError, ValueError):
            return 0
