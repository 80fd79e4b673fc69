from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Iterator

from mywarranties.core.errors import RejectedError
from mywarranties.domain.models import RemoteAck, RemoteRecord, SyncConfig, WarrantyRecord
from mywarranties.domain.ports import RemoteSyncClient, SheetsClientPort
from mywarranties.domain.time_utils import ensure_utc, to_iso, utc_now
from mywarranties.infrastructure.sheets_rows import (
    WARRANTIES_WORKSHEET,
    WARRANTY_HEADERS,
    format_cursor,
    parse_cursor,
    parse_revision,
    remote_record_from_row,
    remote_row_values,
    rows_with_index,
)

logger = logging.getLogger(__name__)


class SheetsRemoteSyncClient(RemoteSyncClient):
    """Almacén remoto de garantías sobre una pestaña de Google Sheets.

    Cada fila lleva una ``revision`` asignada al escribir (máximo + 1), que es
    lo que usa el cursor, y el ``client_updated_at`` de la mutación aplicada,
    que actúa como clave de idempotencia para ``push``.
    """

    def __init__(
        self,
        sheets_client: SheetsClientPort,
        config: SyncConfig,
        *,
        clock: Callable[[], datetime] = utc_now,
        worksheet_name: str = WARRANTIES_WORKSHEET,
    ) -> None:
        self._client = sheets_client
        self._config = config
        self._clock = clock
        self._worksheet_name = worksheet_name
        self._headers: list[str] | None = None
        self._write_lock = threading.Lock()

    def ensure_schema(self) -> list[str]:
        self._client.open_spreadsheet(self._config.credentials_path, self._config.spreadsheet_id)
        self._headers = self._client.ensure_worksheet(self._worksheet_name, list(WARRANTY_HEADERS))
        return list(self._headers)

    def fetch_changes_since(self, cursor: str | None) -> tuple[Iterator[RemoteRecord], str | None]:
        try:
            since = parse_cursor(cursor)
        except ValueError as exc:
            logger.warning("Cursor persistido corrupto; se relee la hoja completa: %s", exc)
            cursor, since = None, 0
        self._ensure_ready()
        values = self._client.read_all_values(self._worksheet_name)
        _, rows = rows_with_index(values)
        candidates = [
            row
            for _, row in rows
            if row.get("owner_id", "").strip() == self._config.owner_id and parse_revision(row.get("revision")) > since
        ]
        candidates.sort(key=lambda row: parse_revision(row.get("revision")))
        highest = max((parse_revision(row.get("revision")) for row in candidates), default=since)
        new_cursor = format_cursor(highest) if highest > since else cursor
        logger.info(
            "Cambios remotos leídos",
            extra={"extra": {"since": cursor, "new_cursor": new_cursor, "rows": len(candidates)}},
        )
        return self._iter_records(candidates), new_cursor

    @staticmethod
    def _iter_records(rows: list[dict[str, str]]) -> Iterator[RemoteRecord]:
        for row in rows:
            try:
                yield remote_record_from_row(row)
            except ValueError as exc:
                logger.warning("Fila remota ignorada: %s", exc, extra={"extra": {"record_id": row.get("id")}})

    def push(self, record: WarrantyRecord) -> RemoteAck:
        if record.owner_id != self._config.owner_id:
            raise RejectedError(f"El registro {record.id} no pertenece al usuario {self._config.owner_id}.")
        self._ensure_ready()
        headers = self._headers or list(WARRANTY_HEADERS)
        with self._write_lock:
            values = self._client.read_all_values(self._worksheet_name)
            _, rows = rows_with_index(values)
            highest_revision = max((parse_revision(row.get("revision")) for _, row in rows), default=0)
            target_row_number, existing = self._find_row(rows, record.id)
            if existing is not None:
                if existing.owner_id and existing.owner_id != record.owner_id:
                    raise RejectedError(f"El registro remoto {record.id} pertenece a otro usuario.")
                if existing.client_updated_at is not None and existing.client_updated_at == ensure_utc(record.updated_at):
                    logger.info(
                        "Push repetido; se devuelve la confirmación previa",
                        extra={"extra": {"record_id": record.id, "updated_at": to_iso(record.updated_at)}},
                    )
                    return RemoteAck(remote_updated_at=existing.updated_at, applied=False)
            candidates = [ensure_utc(self._clock()), ensure_utc(record.updated_at)]
            if existing is not None:
                candidates.append(existing.updated_at)
            server_updated_at = max(candidates)
            row_values = remote_row_values(
                headers,
                record,
                server_updated_at=server_updated_at,
                revision=highest_revision + 1,
            )
            if target_row_number is None:
                self._client.append_rows(self._worksheet_name, [row_values])
            else:
                self._client.update_row(self._worksheet_name, target_row_number, row_values)
        logger.info(
            "Registro enviado al remoto",
            extra={"extra": {"record_id": record.id, "revision": highest_revision + 1, "deleted": record.deleted}},
        )
        return RemoteAck(remote_updated_at=server_updated_at, applied=True)

    @staticmethod
    def _find_row(
        rows: list[tuple[int, dict[str, str]]], record_id: str
    ) -> tuple[int | None, RemoteRecord | None]:
        for row_number, row in rows:
            if row.get("id", "").strip() != record_id:
                continue
            try:
                return row_number, remote_record_from_row(row)
            except ValueError as exc:
                logger.warning("Fila remota corrupta; se sobrescribe: %s", exc, extra={"extra": {"record_id": record_id}})
                return row_number, None
        return None, None

    def _ensure_ready(self) -> None:
        if self._headers is None:
            self.ensure_schema()
