from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterator

from mywarranties.application.conflicts_service import ConflictsService
from mywarranties.application.expiration_scheduler import ExpirationScheduler
from mywarranties.application.reconciliation import ReconciliationEngine, RetryPolicy
from mywarranties.application.warranty_sync_service import WarrantySyncService
from mywarranties.application.warranty_use_cases import WarrantyUseCases
from mywarranties.core.metrics import MetricsRegistry
from mywarranties.core.structured_log import StructuredFileLogger
from mywarranties.domain.models import (
    ConflictPolicy,
    RemoteAck,
    RemoteRecord,
    RenderedNotification,
    ScheduledTicket,
    SyncConfig,
    SyncState,
    WarrantyRecord,
)
from mywarranties.domain.ports import RemoteSyncClient
from mywarranties.infrastructure.conflicts_repository_sqlite import SQLiteConflictsRepository
from mywarranties.infrastructure.db import get_memory_connection
from mywarranties.infrastructure.migrations import run_migrations
from mywarranties.infrastructure.record_store_sqlite import WarrantyRecordStoreSQLite
from mywarranties.infrastructure.sheets_remote_client import SheetsRemoteSyncClient
from mywarranties.infrastructure.sheets_rows import WARRANTIES_WORKSHEET
from mywarranties.infrastructure.sync_state_sqlite import SQLiteSyncStateStore
from mywarranties.infrastructure.trigger_repository_sqlite import SQLiteTriggerRepository

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
OWNER_ID = "owner-1"


def sync_config(**overrides: Any) -> SyncConfig:
    values: dict[str, Any] = {
        "spreadsheet_id": "sheet-e2e",
        "credentials_path": "/tmp/fake-credentials.json",
        "owner_id": OWNER_ID,
        "device_id": "device-e2e",
    }
    values.update(overrides)
    return SyncConfig(**values)


def make_record(record_id: str = "w-1", **overrides: Any) -> WarrantyRecord:
    values: dict[str, Any] = {
        "id": record_id,
        "owner_id": OWNER_ID,
        "product_name": "Lavadora",
        "purchase_date": date(2024, 1, 1),
        "expiration_date": date(2026, 1, 1),
        "updated_at": T0,
    }
    values.update(overrides)
    return WarrantyRecord(**values)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class FakeSheetsClient:
    """Hoja en memoria con la misma forma que devuelve ``get_all_values``: todo texto."""

    def __init__(self) -> None:
        self.grids: dict[str, list[list[str]]] = {}
        self.opened: list[tuple[str, str]] = []
        self.read_calls = 0
        self.write_calls = 0
        self._failures: dict[str, list[Exception]] = {}

    def fail_next(self, operation: str, *errors: Exception) -> None:
        self._failures.setdefault(operation, []).extend(errors)

    def open_spreadsheet(self, credentials_path: str, spreadsheet_id: str) -> object:
        self._maybe_fail("open")
        self.opened.append((credentials_path, spreadsheet_id))
        return object()

    def ensure_worksheet(self, worksheet_name: str, headers: list[str]) -> list[str]:
        grid = self.grids.setdefault(worksheet_name, [[]])
        existing = grid[0]
        existing.extend(header for header in headers if header not in existing)
        return list(existing)

    def read_all_values(self, worksheet_name: str) -> list[list[str]]:
        self._maybe_fail("read")
        self.read_calls += 1
        return [list(row) for row in self.grids.get(worksheet_name, [])]

    def append_rows(self, worksheet_name: str, rows: list[list[Any]]) -> None:
        self._maybe_fail("write")
        self.write_calls += 1
        self.grids[worksheet_name].extend([_as_text(value) for value in row] for row in rows)

    def update_row(self, worksheet_name: str, row_number: int, values: list[Any]) -> None:
        self._maybe_fail("write")
        self.write_calls += 1
        self.grids[worksheet_name][row_number - 1] = [_as_text(value) for value in values]

    def rows(self, worksheet_name: str = WARRANTIES_WORKSHEET) -> list[dict[str, str]]:
        grid = self.grids.get(worksheet_name, [[]])
        headers = grid[0]
        return [dict(zip(headers, row)) for row in grid[1:]]

    def _maybe_fail(self, operation: str) -> None:
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)


def _as_text(value: Any) -> str:
    return "" if value is None else str(value)


class RecordingAlarms:
    def __init__(self) -> None:
        self.tickets: list[ScheduledTicket] = []

    def schedule(self, ticket: ScheduledTicket) -> None:
        self.tickets.append(ticket)


class RecordingDispatcher:
    def __init__(self, fail_times: int = 0) -> None:
        self.fail_times = fail_times
        self.notifications: list[RenderedNotification] = []

    def dispatch(self, notification: RenderedNotification) -> None:
        if self.fail_times > 0:
            self.fail_times -= 1
            raise RuntimeError("transporte push caído")
        self.notifications.append(notification)


class FlakyRemote:
    """Envuelve un cliente remoto e inyecta errores antes de delegar."""

    def __init__(self, inner: RemoteSyncClient) -> None:
        self.inner = inner
        self.fetch_errors: list[Exception] = []
        self.push_errors: list[Exception] = []
        self.always_fail_push: Exception | None = None
        self.fetch_calls = 0
        self.push_calls = 0

    def fetch_changes_since(self, cursor: str | None) -> tuple[Iterator[RemoteRecord], str | None]:
        self.fetch_calls += 1
        if self.fetch_errors:
            raise self.fetch_errors.pop(0)
        return self.inner.fetch_changes_since(cursor)

    def push(self, record: WarrantyRecord) -> RemoteAck:
        self.push_calls += 1
        if self.always_fail_push is not None:
            raise self.always_fail_push
        if self.push_errors:
            raise self.push_errors.pop(0)
        return self.inner.push(record)


class BlockingRemote(FlakyRemote):
    """El primer ``fetch_changes_since`` queda bloqueado hasta ``release``."""

    def __init__(self, inner: RemoteSyncClient) -> None:
        super().__init__(inner)
        self.entered = threading.Event()
        self._release = threading.Event()

    def release(self) -> None:
        self._release.set()

    def fetch_changes_since(self, cursor: str | None) -> tuple[Iterator[RemoteRecord], str | None]:
        self.entered.set()
        if not self._release.wait(timeout=5):
            raise AssertionError("BlockingRemote nunca fue liberado")
        return super().fetch_changes_since(cursor)


@dataclass
class Device:
    """Un dispositivo completo (SQLite propio) contra una hoja compartida."""

    connection: sqlite3.Connection
    clock: FakeClock
    sheets: FakeSheetsClient
    remote: FlakyRemote
    store: WarrantyRecordStoreSQLite
    conflicts: SQLiteConflictsRepository
    sync_state: SQLiteSyncStateStore
    triggers: SQLiteTriggerRepository
    engine: ReconciliationEngine
    scheduler: ExpirationScheduler
    use_cases: WarrantyUseCases
    conflicts_service: ConflictsService
    sync_service: WarrantySyncService
    dispatcher: RecordingDispatcher
    alarms: RecordingAlarms
    metrics: MetricsRegistry
    sleeps: list[float] = field(default_factory=list)

    def close(self) -> None:
        self.connection.close()


def build_device(
    sheets: FakeSheetsClient,
    *,
    clock: FakeClock | None = None,
    policy: ConflictPolicy = ConflictPolicy.REMOTE_WINS,
    lead_time_days: int = 30,
    remote_factory: type[FlakyRemote] = FlakyRemote,
    retry_policy: RetryPolicy | None = None,
    connection: sqlite3.Connection | None = None,
    structured_logger: StructuredFileLogger | None = None,
) -> Device:
    clock = clock or FakeClock()
    if connection is None:
        connection = get_memory_connection()
        run_migrations(connection)
    metrics = MetricsRegistry()
    sleeps: list[float] = []
    store = WarrantyRecordStoreSQLite(connection, clock=clock)
    conflicts = SQLiteConflictsRepository(connection, clock=clock)
    sync_state = SQLiteSyncStateStore(connection, clock=clock)
    triggers = SQLiteTriggerRepository(connection)
    remote = remote_factory(SheetsRemoteSyncClient(sheets, sync_config(), clock=clock))
    engine = ReconciliationEngine(
        store,
        remote,
        conflicts,
        sync_state,
        conflict_policy=policy,
        retry_policy=retry_policy or RetryPolicy(max_attempts=3, initial_backoff_seconds=0.2),
        sleeper=sleeps.append,
        clock=clock,
        metrics=metrics,
        structured_logger=structured_logger,
    )
    dispatcher = RecordingDispatcher()
    alarms = RecordingAlarms()
    scheduler = ExpirationScheduler(
        triggers,
        store,
        dispatcher,
        alarms,
        sync_state,
        lead_time_days=lead_time_days,
        clock=clock,
        metrics=metrics,
    )
    ids = iter(f"w-{index}" for index in range(1, 10_000))
    return Device(
        connection=connection,
        clock=clock,
        sheets=sheets,
        remote=remote,
        store=store,
        conflicts=conflicts,
        sync_state=sync_state,
        triggers=triggers,
        engine=engine,
        scheduler=scheduler,
        use_cases=WarrantyUseCases(store, lambda: OWNER_ID, clock=clock, id_factory=lambda: next(ids)),
        conflicts_service=ConflictsService(conflicts, store, clock=clock),
        sync_service=WarrantySyncService(engine, scheduler, store),
        dispatcher=dispatcher,
        alarms=alarms,
        metrics=metrics,
        sleeps=sleeps,
    )


def remote_edit(sheets: FakeSheetsClient, record: WarrantyRecord, at: datetime) -> RemoteAck:
    """Simula otro dispositivo empujando ``record`` con su propio reloj."""
    other = SheetsRemoteSyncClient(sheets, sync_config(device_id="device-otro"), clock=lambda: at)
    return other.push(record.with_changes(updated_at=at, sync_state=SyncState.PENDING_UPDATE))
