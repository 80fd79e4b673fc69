from __future__ import annotations

import sqlite3
from datetime import date, datetime, timezone
from pathlib import Path

import pytest

from mywarranties.domain.models import ReminderTrigger, TriggerState
from mywarranties.infrastructure.db import get_connection, get_memory_connection
from mywarranties.infrastructure.migrations import MigrationRunner
from mywarranties.infrastructure.sqlite_uow import transaction
from mywarranties.infrastructure.sync_state_sqlite import SQLiteSyncStateStore
from mywarranties.infrastructure.trigger_repository_sqlite import SQLiteTriggerRepository

FIRE_AT = datetime(2024, 12, 18, tzinfo=timezone.utc)


def test_migraciones_crean_el_esquema_y_son_idempotentes() -> None:
    connection = get_memory_connection()
    runner = MigrationRunner(connection)

    assert runner.apply_all() == [1, 2, 3]
    assert runner.apply_all() == []
    tables = {row["name"] for row in connection.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
    assert {"warranty_records", "purged_records", "reminder_triggers", "sync_state", "sync_conflicts"} <= tables
    assert connection.execute("PRAGMA user_version").fetchone()[0] == 3
    connection.close()


def test_rollback_revierte_la_ultima_migracion() -> None:
    connection = get_memory_connection()
    runner = MigrationRunner(connection)
    runner.apply_all()

    assert runner.rollback() == [3]
    assert [item["applied"] for item in runner.status()] == [True, True, False]
    assert connection.execute("PRAGMA user_version").fetchone()[0] == 2
    connection.close()


def test_conexion_en_disco_usa_wal(tmp_path: Path) -> None:
    connection = get_connection(tmp_path / "data" / "mywarranties.db")

    assert connection.execute("PRAGMA journal_mode").fetchone()[0].lower() == "wal"
    assert connection.execute("PRAGMA foreign_keys").fetchone()[0] == 1
    connection.close()


def test_transaction_anidada_aisla_el_error_interno(connection: sqlite3.Connection) -> None:
    store = SQLiteSyncStateStore(connection)

    with transaction(connection):
        store.set_value("a", "1")
        with pytest.raises(ValueError):
            with transaction(connection):
                store.set_value("b", "2")
                raise ValueError("interno")

    assert store.get_value("a") == "1"
    assert store.get_value("b") is None


def test_sync_state_guarda_cursor_y_valores(connection: sqlite3.Connection) -> None:
    store = SQLiteSyncStateStore(connection)

    store.save_cursor(None)
    assert store.load_cursor() is None

    store.save_cursor("7")
    store.save_cursor("9")
    store.set_value("generation_floor", "3")

    assert store.load_cursor() == "9"
    assert store.get_value("generation_floor") == "3"


def _trigger(generation: int = 1) -> ReminderTrigger:
    return ReminderTrigger(record_id="w-1", fire_at=FIRE_AT, expiration_date=date(2025, 1, 1), generation=generation)


def test_mark_fired_if_current_es_compare_and_set(connection: sqlite3.Connection) -> None:
    triggers = SQLiteTriggerRepository(connection)
    triggers.save(_trigger(generation=2))

    assert triggers.mark_fired_if_current("w-1", 1, FIRE_AT) is False
    assert triggers.mark_fired_if_current("w-1", 2, FIRE_AT) is True
    assert triggers.mark_fired_if_current("w-1", 2, FIRE_AT) is False

    fired = triggers.get("w-1")
    assert fired.state == TriggerState.FIRED
    assert fired.fired_at == FIRE_AT

    triggers.revert_fired("w-1", 2)
    assert triggers.get("w-1").is_live


def test_list_due_y_max_generation(connection: sqlite3.Connection) -> None:
    triggers = SQLiteTriggerRepository(connection)
    assert triggers.max_generation() == 0
    triggers.save(_trigger(generation=5))

    assert [trigger.record_id for trigger in triggers.list_due(FIRE_AT)] == ["w-1"]
    assert triggers.list_due(datetime(2024, 12, 17, tzinfo=timezone.utc)) == []
    assert triggers.max_generation() == 5

    triggers.delete_all()
    assert triggers.list_all() == []
