from __future__ import annotations

from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any, Iterator, Protocol

from mywarranties.domain.models import (
    ConflictEntry,
    ReminderTrigger,
    RemoteAck,
    RemoteRecord,
    RenderedNotification,
    ScheduledTicket,
    SyncConfig,
    SyncState,
    WarrantyRecord,
)


class RecordStore(Protocol):
    def upsert(self, record: WarrantyRecord, sync_state: SyncState) -> WarrantyRecord:
        ...

    def get(self, record_id: str) -> WarrantyRecord:
        ...

    def find(self, record_id: str) -> WarrantyRecord | None:
        ...

    def list_all(self, include_deleted: bool = True) -> list[WarrantyRecord]:
        ...

    def list_pending(self) -> list[WarrantyRecord]:
        ...

    def mark_synced(self, record_id: str, remote_updated_at: datetime) -> WarrantyRecord:
        ...

    def purge_tombstone(self, record_id: str) -> None:
        ...

    def is_purged(self, record_id: str) -> bool:
        ...

    def record_lock(self, record_id: str) -> AbstractContextManager[None]:
        ...

    def atomic(self) -> AbstractContextManager[None]:
        ...


class RemoteSyncClient(Protocol):
    def fetch_changes_since(self, cursor: str | None) -> tuple[Iterator[RemoteRecord], str | None]:
        ...

    def push(self, record: WarrantyRecord) -> RemoteAck:
        ...


class SyncStateStore(Protocol):
    def load_cursor(self) -> str | None:
        ...

    def save_cursor(self, cursor: str | None) -> None:
        ...

    def get_value(self, key: str) -> str | None:
        ...

    def set_value(self, key: str, value: str) -> None:
        ...


class ConflictsRepository(Protocol):
    def register(
        self,
        record_id: str,
        reason: str,
        local_snapshot: dict[str, Any],
        remote_snapshot: dict[str, Any],
    ) -> int:
        ...

    def refresh_remote_snapshot(self, record_id: str, remote_snapshot: dict[str, Any]) -> bool:
        ...

    def list_open(self) -> list[ConflictEntry]:
        ...

    def get(self, conflict_id: int) -> ConflictEntry | None:
        ...

    def count_open(self) -> int:
        ...

    def mark_resolved(self, conflict_id: int, resolution: str) -> None:
        ...


class TriggerRepository(Protocol):
    def get(self, record_id: str) -> ReminderTrigger | None:
        ...

    def list_all(self) -> list[ReminderTrigger]:
        ...

    def save(self, trigger: ReminderTrigger) -> None:
        ...

    def mark_fired_if_current(self, record_id: str, generation: int, fired_at: datetime) -> bool:
        ...

    def revert_fired(self, record_id: str, generation: int) -> None:
        ...

    def delete_all(self) -> None:
        ...

    def max_generation(self) -> int:
        ...


class NotificationDispatcher(Protocol):
    def dispatch(self, notification: RenderedNotification) -> None:
        ...


class AlarmScheduler(Protocol):
    def schedule(self, ticket: ScheduledTicket) -> None:
        ...


class SheetsClientPort(Protocol):
    def open_spreadsheet(self, credentials_path: str, spreadsheet_id: str) -> Any:
        ...

    def ensure_worksheet(self, worksheet_name: str, headers: list[str]) -> list[str]:
        ...

    def read_all_values(self, worksheet_name: str) -> list[list[str]]:
        ...

    def append_rows(self, worksheet_name: str, rows: list[list[Any]]) -> None:
        ...

    def update_row(self, worksheet_name: str, row_number: int, values: list[Any]) -> None:
        ...


class SyncConfigStorePort(Protocol):
    def load(self) -> SyncConfig | None:
        ...

    def save(self, config: SyncConfig) -> SyncConfig:
        ...
