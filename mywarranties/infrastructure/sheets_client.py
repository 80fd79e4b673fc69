from __future__ import annotations

import json
import logging
from typing import Any, Callable, TypeVar

import gspread
from google.auth.exceptions import GoogleAuthError

from mywarranties.bootstrap.logging import log_operational_error
from mywarranties.core.metrics import metrics_registry
from mywarranties.core.observability import get_correlation_id
from mywarranties.domain.ports import SheetsClientPort
from mywarranties.domain.sheets_errors import SheetsPermissionError
from mywarranties.infrastructure.sheets_errors import map_gspread_exception
from mywarranties.infrastructure.sheets_rows import worksheet_from_operation_name

logger = logging.getLogger(__name__)

T = TypeVar("T")

READ_CALLS_METRIC = "sheets.read_calls"
WRITE_CALLS_METRIC = "sheets.write_calls"

_MAPPED_EXCEPTIONS = (
    gspread.exceptions.GSpreadException,
    GoogleAuthError,
    json.JSONDecodeError,
    OSError,
)


class SheetsClient(SheetsClientPort):
    """Adaptador fino sobre gspread.

    No reintenta: los errores se traducen a la taxonomía de la aplicación y el
    motor de reconciliación decide la política de reintentos.
    """

    def __init__(self) -> None:
        self._spreadsheet: gspread.Spreadsheet | None = None
        self._worksheet_cache: dict[str, gspread.Worksheet] = {}

    def open_spreadsheet(self, credentials_path: str, spreadsheet_id: str) -> gspread.Spreadsheet:
        logger.info("Conectando a Google Sheets", extra={"extra": {"spreadsheet_id": spreadsheet_id}})

        def _open() -> gspread.Spreadsheet:
            client = gspread.service_account(filename=str(credentials_path))
            return client.open_by_key(spreadsheet_id)

        spreadsheet = self._call("open_spreadsheet", _open, spreadsheet_id=spreadsheet_id)
        self._spreadsheet = spreadsheet
        self._worksheet_cache = {}
        return spreadsheet

    def ensure_worksheet(self, worksheet_name: str, headers: list[str]) -> list[str]:
        spreadsheet = self._require_spreadsheet()

        def _get_or_create() -> gspread.Worksheet:
            try:
                return spreadsheet.worksheet(worksheet_name)
            except gspread.WorksheetNotFound:
                cols = max(10, len(headers) + 2)
                logger.info("Creando pestaña %s", worksheet_name)
                return spreadsheet.add_worksheet(title=worksheet_name, rows=200, cols=cols)

        worksheet = self._call(f"ensure_worksheet({worksheet_name})", _get_or_create)
        self._worksheet_cache[worksheet_name] = worksheet
        existing = self._call(f"worksheet.row_values({worksheet_name})", lambda: worksheet.row_values(1))
        missing = [header for header in headers if header not in existing]
        if missing:
            updated = list(existing) + missing
            self._call(f"worksheet.update({worksheet_name})", lambda: worksheet.update(values=[updated], range_name="1:1"))
            metrics_registry.incrementar(WRITE_CALLS_METRIC)
            logger.info("Cabecera actualizada en %s (añadidas %s columnas)", worksheet_name, len(missing))
            return updated
        return list(existing)

    def read_all_values(self, worksheet_name: str) -> list[list[str]]:
        worksheet = self.get_worksheet(worksheet_name)
        values = self._call(f"worksheet.get_all_values({worksheet_name})", worksheet.get_all_values)
        metrics_registry.incrementar(READ_CALLS_METRIC)
        return values

    def get_worksheet(self, name: str) -> gspread.Worksheet:
        if name in self._worksheet_cache:
            return self._worksheet_cache[name]
        spreadsheet = self._require_spreadsheet()
        worksheet = self._call(f"spreadsheet.worksheet({name})", lambda: spreadsheet.worksheet(name))
        self._worksheet_cache[name] = worksheet
        return worksheet

    def append_rows(self, worksheet_name: str, rows: list[list[Any]]) -> None:
        if not rows:
            return
        worksheet = self.get_worksheet(worksheet_name)
        self._call(
            f"worksheet.append_rows({worksheet_name})",
            lambda: worksheet.append_rows(rows, value_input_option="RAW"),
        )
        metrics_registry.incrementar(WRITE_CALLS_METRIC)

    def update_row(self, worksheet_name: str, row_number: int, values: list[Any]) -> None:
        worksheet = self.get_worksheet(worksheet_name)
        start = gspread.utils.rowcol_to_a1(row_number, 1)
        end = gspread.utils.rowcol_to_a1(row_number, len(values))
        self._call(
            f"worksheet.update({worksheet_name})",
            lambda: worksheet.update(values=[values], range_name=f"{start}:{end}", value_input_option="RAW"),
        )
        metrics_registry.incrementar(WRITE_CALLS_METRIC)

    def _require_spreadsheet(self) -> gspread.Spreadsheet:
        if self._spreadsheet is None:
            raise RuntimeError("Spreadsheet no inicializado. Llama a open_spreadsheet primero.")
        return self._spreadsheet

    def _call(self, operation_name: str, operation: Callable[[], T], *, spreadsheet_id: str | None = None) -> T:
        try:
            return operation()
        except _MAPPED_EXCEPTIONS as exc:
            mapped_error = map_gspread_exception(exc)
            if isinstance(mapped_error, SheetsPermissionError):
                self._log_permission_error(
                    mapped_error,
                    spreadsheet_id=spreadsheet_id or getattr(self._spreadsheet, "id", None),
                    worksheet_name=worksheet_from_operation_name(operation_name),
                )
            raise mapped_error from exc

    @staticmethod
    def _log_permission_error(
        error: SheetsPermissionError,
        *,
        spreadsheet_id: str | None = None,
        worksheet_name: str | None = None,
    ) -> None:
        log_operational_error(
            logger,
            "Sync failed: permisos insuficientes en Google Sheets",
            exc=error,
            extra={
                "correlation_id": get_correlation_id(),
                "operation": "sheets_permission_check",
                "spreadsheet_id": spreadsheet_id,
                "worksheet": worksheet_name,
            },
        )
