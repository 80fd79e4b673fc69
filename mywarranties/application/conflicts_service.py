from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from mywarranties.core.errors import NotFoundError
from mywarranties.domain.models import ConflictEntry, SyncState, WarrantyRecord, record_from_snapshot
from mywarranties.domain.ports import ConflictsRepository, RecordStore
from mywarranties.domain.time_utils import next_timestamp, parse_iso, utc_now

logger = logging.getLogger(__name__)


class ConflictsService:
    def __init__(
        self,
        repository: ConflictsRepository,
        store: RecordStore,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repository = repository
        self._store = store
        self._clock = clock

    def list_conflicts(self) -> list[ConflictEntry]:
        return self._repository.list_open()

    def count_conflicts(self) -> int:
        return self._repository.count_open()

    def resolve(self, conflict_id: int, keep_local: bool) -> WarrantyRecord | None:
        """Cierra un conflicto abierto.

        Conservar lo local re-emite el snapshot local como mutación pendiente con
        un ``updated_at`` nuevo. Conservar lo remoto aplica el snapshot remoto como
        ``clean``; en un rechazo sin copia remota, un registro que nunca llegó a
        sincronizarse se purga y el resto vuelve a ``clean``.
        """
        entry = self._repository.get(conflict_id)
        if entry is None:
            raise NotFoundError(str(conflict_id))
        with self._store.record_lock(entry.record_id):
            current = self._store.find(entry.record_id)
            if keep_local:
                resolved = self._keep_local(entry, current)
            else:
                resolved = self._keep_remote(entry, current)
        logger.info(
            "Conflicto resuelto",
            extra={"extra": {"conflict_id": conflict_id, "record_id": entry.record_id, "keep_local": keep_local}},
        )
        return resolved

    def _keep_local(self, entry: ConflictEntry, current: WarrantyRecord | None) -> WarrantyRecord:
        remote_updated_at = parse_iso(entry.remote_snapshot.get("updated_at")) if entry.remote_snapshot else None
        base = remote_updated_at or (current.base_updated_at if current else None)
        local = record_from_snapshot(entry.local_snapshot, SyncState.PENDING_UPDATE, base)
        previous = max(local.updated_at, current.updated_at) if current else local.updated_at
        if local.deleted:
            state = SyncState.PENDING_DELETE
        elif base is None:
            state = SyncState.PENDING_CREATE
        else:
            state = SyncState.PENDING_UPDATE
        reemitted = local.with_changes(updated_at=next_timestamp(previous, self._clock()), base_updated_at=base)
        with self._store.atomic():
            stored = self._store.upsert(reemitted, state)
            self._repository.mark_resolved(entry.id, "keep_local")
        return stored

    def _keep_remote(self, entry: ConflictEntry, current: WarrantyRecord | None) -> WarrantyRecord | None:
        if entry.remote_snapshot:
            remote_updated_at = parse_iso(entry.remote_snapshot.get("updated_at"))
            remote = record_from_snapshot(entry.remote_snapshot, SyncState.CLEAN, remote_updated_at)
            if current is not None and current.updated_at > remote.updated_at:
                remote = remote.with_changes(updated_at=current.updated_at)
            with self._store.atomic():
                stored = self._store.upsert(remote, SyncState.CLEAN)
                self._repository.mark_resolved(entry.id, "keep_remote")
            return stored
        if current is None:
            self._repository.mark_resolved(entry.id, "keep_remote")
            return None
        if current.base_updated_at is None:
            discarded = current.with_changes(deleted=True)
            with self._store.atomic():
                self._store.upsert(discarded, SyncState.CLEAN)
                self._repository.mark_resolved(entry.id, "discard_local")
            self._store.purge_tombstone(current.id)
            return None
        with self._store.atomic():
            stored = self._store.upsert(current, SyncState.CLEAN)
            self._repository.mark_resolved(entry.id, "keep_remote")
        return stored
