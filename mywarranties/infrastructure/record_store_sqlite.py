from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from datetime import datetime
from typing import Callable, TypeVar

from mywarranties.core.errors import NotFoundError, PersistenceError, ValidationError
from mywarranties.core.locks import KeyedLocks
from mywarranties.domain.models import PENDING_STATES, SyncState, WarrantyRecord
from mywarranties.domain.ports import RecordStore
from mywarranties.domain.time_utils import ensure_utc, parse_date, parse_iso, to_iso, utc_now
from mywarranties.infrastructure.db import connection_lock
from mywarranties.infrastructure.sqlite_uow import transaction

logger = logging.getLogger(__name__)

_LOCKED_RETRY_BACKOFF_SECONDS = (0.05, 0.15, 0.3)
_T = TypeVar("_T")

_SELECT_COLUMNS = """
    id, owner_id, product_name, purchase_date, expiration_date, receipt_ref,
    updated_at, deleted, sync_state, base_updated_at
"""


def _is_locked_operational_error(error: sqlite3.OperationalError) -> bool:
    return "locked" in str(error).lower()


def _run_with_locked_retry(operation: Callable[[], _T], *, context: str) -> _T:
    for attempt, delay_seconds in enumerate(_LOCKED_RETRY_BACKOFF_SECONDS, start=1):
        try:
            return operation()
        except sqlite3.OperationalError as error:
            if not _is_locked_operational_error(error):
                raise
            logger.warning(
                "SQLite locked in %s (attempt=%s/%s); retrying in %.0fms",
                context,
                attempt,
                len(_LOCKED_RETRY_BACKOFF_SECONDS),
                delay_seconds * 1000,
            )
            time.sleep(delay_seconds)

    return operation()


def _row_to_record(row: sqlite3.Row) -> WarrantyRecord:
    try:
        purchase_date = parse_date(row["purchase_date"])
        expiration_date = parse_date(row["expiration_date"])
        updated_at = parse_iso(row["updated_at"])
        if purchase_date is None or expiration_date is None or updated_at is None:
            raise ValueError("campos obligatorios vacíos")
        return WarrantyRecord(
            id=row["id"],
            owner_id=row["owner_id"],
            product_name=row["product_name"],
            purchase_date=purchase_date,
            expiration_date=expiration_date,
            updated_at=updated_at,
            receipt_ref=row["receipt_ref"],
            deleted=bool(row["deleted"]),
            sync_state=SyncState(row["sync_state"]),
            base_updated_at=parse_iso(row["base_updated_at"]),
        )
    except (ValueError, ValidationError) as exc:
        raise PersistenceError(f"Fila corrupta en warranty_records ({row['id']}): {exc}") from exc


class WarrantyRecordStoreSQLite(RecordStore):
    """Caché local de garantías sobre la tabla ``warranty_records``.

    Es el único escritor de ``sync_state``. Cada escritura es una transacción
    propia, así que un lector nunca ve un registro a medio escribir. El acceso
    a la conexión se serializa con un lock corto por sentencia; las llamadas
    remotas nunca se hacen con ese lock tomado.
    """

    def __init__(
        self,
        connection: sqlite3.Connection,
        *,
        locks: KeyedLocks | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._connection = connection
        self._connection_lock = connection_lock(connection)
        self._locks = locks or KeyedLocks()
        self._clock = clock

    def record_lock(self, record_id: str) -> AbstractContextManager[None]:
        return self._locks.hold(record_id)

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Agrupa varias escrituras (de este u otros repositorios) en una transacción."""
        with self._connection_lock, transaction(self._connection):
            yield

    def upsert(self, record: WarrantyRecord, sync_state: SyncState) -> WarrantyRecord:
        stored = record.with_changes(sync_state=SyncState(sync_state), updated_at=ensure_utc(record.updated_at))
        with self.record_lock(record.id):
            _run_with_locked_retry(lambda: self._write_upsert(stored), context="warranty_records.upsert")
        return stored

    def _write_upsert(self, record: WarrantyRecord) -> None:
        with self._connection_lock, transaction(self._connection) as connection:
            if self._is_purged(connection, record.id):
                raise ValidationError(f"El id {record.id} pertenece a un registro purgado y no puede reutilizarse.")
            row = connection.execute("SELECT updated_at FROM warranty_records WHERE id = ?", (record.id,)).fetchone()
            if row is not None:
                current_updated_at = parse_iso(row["updated_at"])
                if current_updated_at is not None and record.updated_at < current_updated_at:
                    raise ValidationError(
                        f"updated_at no puede retroceder para {record.id}: "
                        f"{to_iso(record.updated_at)} < {to_iso(current_updated_at)}"
                    )
            connection.execute(
                """
                INSERT INTO warranty_records (
                    id, owner_id, product_name, purchase_date, expiration_date, receipt_ref,
                    updated_at, deleted, sync_state, base_updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    owner_id = excluded.owner_id,
                    product_name = excluded.product_name,
                    purchase_date = excluded.purchase_date,
                    expiration_date = excluded.expiration_date,
                    receipt_ref = excluded.receipt_ref,
                    updated_at = excluded.updated_at,
                    deleted = excluded.deleted,
                    sync_state = excluded.sync_state,
                    base_updated_at = excluded.base_updated_at
                """,
                (
                    record.id,
                    record.owner_id,
                    record.product_name,
                    record.purchase_date.isoformat(),
                    record.expiration_date.isoformat(),
                    record.receipt_ref,
                    to_iso(record.updated_at),
                    1 if record.deleted else 0,
                    record.sync_state.value,
                    to_iso(record.base_updated_at),
                ),
            )

    def get(self, record_id: str) -> WarrantyRecord:
        record = self.find(record_id)
        if record is None:
            raise NotFoundError(record_id)
        return record

    def find(self, record_id: str) -> WarrantyRecord | None:
        with self._connection_lock:
            row = self._connection.execute(
                f"SELECT {_SELECT_COLUMNS} FROM warranty_records WHERE id = ?", (record_id,)
            ).fetchone()
        return _row_to_record(row) if row is not None else None

    def list_all(self, include_deleted: bool = True) -> list[WarrantyRecord]:
        sql = f"SELECT {_SELECT_COLUMNS} FROM warranty_records"
        if not include_deleted:
            sql += " WHERE deleted = 0"
        sql += " ORDER BY expiration_date ASC, id ASC"
        with self._connection_lock:
            rows = self._connection.execute(sql).fetchall()
        return [_row_to_record(row) for row in rows]

    def list_pending(self) -> list[WarrantyRecord]:
        states = tuple(state.value for state in PENDING_STATES)
        placeholders = ", ".join("?" for _ in states)
        with self._connection_lock:
            rows = self._connection.execute(
                f"SELECT {_SELECT_COLUMNS} FROM warranty_records WHERE sync_state IN ({placeholders}) "
                "ORDER BY updated_at ASC, id ASC",
                states,
            ).fetchall()
        return [_row_to_record(row) for row in rows]

    def mark_synced(self, record_id: str, remote_updated_at: datetime) -> WarrantyRecord:
        remote_updated_at = ensure_utc(remote_updated_at)
        with self.record_lock(record_id):
            current = self.get(record_id)
            synced = current.with_changes(
                updated_at=max(current.updated_at, remote_updated_at),
                base_updated_at=remote_updated_at,
            )
            return self.upsert(synced, SyncState.CLEAN)

    def purge_tombstone(self, record_id: str) -> None:
        with self.record_lock(record_id):
            current = self.get(record_id)
            if not current.deleted or current.sync_state != SyncState.CLEAN:
                raise ValidationError(
                    f"Solo se purgan tombstones confirmados; {record_id} está en {current.sync_state.value}."
                )
            self._purge(current)

    def _purge(self, record: WarrantyRecord) -> None:
        def _write() -> None:
            with self._connection_lock, transaction(self._connection) as connection:
                connection.execute("DELETE FROM warranty_records WHERE id = ?", (record.id,))
                connection.execute(
                    """
                    INSERT INTO purged_records (id, updated_at, purged_at) VALUES (?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET updated_at = excluded.updated_at, purged_at = excluded.purged_at
                    """,
                    (record.id, to_iso(record.updated_at), to_iso(self._clock())),
                )

        _run_with_locked_retry(_write, context="warranty_records.purge")
        logger.info("Registro purgado", extra={"extra": {"record_id": record.id}})

    def is_purged(self, record_id: str) -> bool:
        with self._connection_lock:
            return self._is_purged(self._connection, record_id)

    @staticmethod
    def _is_purged(connection: sqlite3.Connection, record_id: str) -> bool:
        row = connection.execute("SELECT 1 FROM purged_records WHERE id = ?", (record_id,)).fetchone()
        return row is not None
