from __future__ import annotations

import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable

from mywarranties.application.conflicts_service import ConflictsService
from mywarranties.application.expiration_scheduler import ExpirationScheduler
from mywarranties.application.reconciliation import ReconciliationEngine, RetryPolicy
from mywarranties.application.warranty_sync_service import WarrantySyncService
from mywarranties.application.warranty_use_cases import WarrantyUseCases
from mywarranties.bootstrap.settings import resolve_appdata_dir, resolve_log_dir
from mywarranties.core.errors import ValidationError
from mywarranties.core.locks import KeyedLocks
from mywarranties.core.structured_log import StructuredFileLogger
from mywarranties.domain.models import SyncConfig
from mywarranties.domain.ports import AlarmScheduler, NotificationDispatcher, SheetsClientPort
from mywarranties.domain.time_utils import utc_now
from mywarranties.infrastructure.conflicts_repository_sqlite import SQLiteConflictsRepository
from mywarranties.infrastructure.db import get_connection
from mywarranties.infrastructure.local_config import SyncConfigStore
from mywarranties.infrastructure.migrations import run_migrations
from mywarranties.infrastructure.notification_outbox import JsonlAlarmLog, JsonlNotificationOutbox
from mywarranties.infrastructure.record_store_sqlite import WarrantyRecordStoreSQLite
from mywarranties.infrastructure.sheets_client import SheetsClient
from mywarranties.infrastructure.sheets_remote_client import SheetsRemoteSyncClient
from mywarranties.infrastructure.sync_state_sqlite import SQLiteSyncStateStore
from mywarranties.infrastructure.trigger_repository_sqlite import SQLiteTriggerRepository


@dataclass
class AppContainer:
    connection: sqlite3.Connection
    config: SyncConfig
    store: WarrantyRecordStoreSQLite
    warranty_use_cases: WarrantyUseCases
    conflicts_service: ConflictsService
    engine: ReconciliationEngine
    scheduler: ExpirationScheduler
    sync_service: WarrantySyncService


ConnectionFactory = Callable[[], sqlite3.Connection]


def build_container(
    config: SyncConfig | None = None,
    *,
    connection_factory: ConnectionFactory = get_connection,
    config_store: SyncConfigStore | None = None,
    sheets_client: SheetsClientPort | None = None,
    dispatcher: NotificationDispatcher | None = None,
    alarms: AlarmScheduler | None = None,
    data_dir: Path | None = None,
    retry_policy: RetryPolicy | None = None,
    clock: Callable[[], datetime] = utc_now,
    sleeper: Callable[[float], None] = time.sleep,
) -> AppContainer:
    store_config = config_store or SyncConfigStore(data_dir)
    resolved_config = config or store_config.load()
    if resolved_config is None:
        raise ValidationError(
            f"Falta configuración de sincronización (spreadsheet_id y owner_id) en {store_config.config_path}."
        )

    connection = connection_factory()
    run_migrations(connection)

    base_dir = data_dir or resolve_appdata_dir()
    locks = KeyedLocks()
    store = WarrantyRecordStoreSQLite(connection, locks=locks, clock=clock)
    conflicts_repository = SQLiteConflictsRepository(connection, clock=clock)
    sync_state = SQLiteSyncStateStore(connection, clock=clock)
    triggers = SQLiteTriggerRepository(connection)

    remote = SheetsRemoteSyncClient(sheets_client or SheetsClient(), resolved_config, clock=clock)
    engine = ReconciliationEngine(
        store,
        remote,
        conflicts_repository,
        sync_state,
        conflict_policy=resolved_config.conflict_policy,
        retry_policy=retry_policy,
        sleeper=sleeper,
        clock=clock,
        structured_logger=StructuredFileLogger(resolve_log_dir() / "sync_audit.jsonl"),
    )
    scheduler = ExpirationScheduler(
        triggers,
        store,
        dispatcher or JsonlNotificationOutbox(base_dir / "outbox" / "notifications.jsonl"),
        alarms or JsonlAlarmLog(base_dir / "outbox" / "alarms.jsonl"),
        sync_state,
        lead_time_days=resolved_config.lead_time_days,
        clock=clock,
    )
    return AppContainer(
        connection=connection,
        config=resolved_config,
        store=store,
        warranty_use_cases=WarrantyUseCases(store, lambda: resolved_config.owner_id, clock=clock),
        conflicts_service=ConflictsService(conflicts_repository, store, clock=clock),
        engine=engine,
        scheduler=scheduler,
        sync_service=WarrantySyncService(engine, scheduler, store),
    )
