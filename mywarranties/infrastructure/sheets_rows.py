from __future__ import annotations

from datetime import datetime
from typing import Any

from mywarranties.domain.models import RemoteRecord, WarrantyRecord
from mywarranties.domain.time_utils import parse_date, parse_iso, to_iso

WARRANTIES_WORKSHEET = "warranties"
WARRANTY_HEADERS = [
    "id",
    "owner_id",
    "product_name",
    "purchase_date",
    "expiration_date",
    "receipt_ref",
    "updated_at",
    "client_updated_at",
    "deleted",
    "revision",
]

_TRUE_VALUES = {"1", "true", "yes", "si", "sí", "verdadero"}


def worksheet_from_operation_name(operation_name: str) -> str | None:
    start = operation_name.find("(")
    end = operation_name.rfind(")")
    if start < 0 or end <= start:
        return None
    worksheet_name = operation_name[start + 1 : end].strip()
    return worksheet_name or None


def rows_with_index(values: list[list[str]]) -> tuple[list[str], list[tuple[int, dict[str, str]]]]:
    """Convierte ``get_all_values`` en (cabecera, [(número de fila, fila como dict)]).

    Las filas totalmente vacías se omiten; los números de fila son los de la
    hoja (la cabecera es la fila 1).
    """
    if not values:
        return [], []
    headers = [str(header).strip() for header in values[0]]
    rows: list[tuple[int, dict[str, str]]] = []
    for row_number, row in enumerate(values[1:], start=2):
        if not any(str(cell).strip() for cell in row):
            continue
        payload = {headers[i]: str(row[i]) if i < len(row) else "" for i in range(len(headers))}
        rows.append((row_number, payload))
    return headers, rows


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in _TRUE_VALUES


def parse_revision(value: Any) -> int:
    texto = str(value or "").strip()
    if not texto:
        return 0
    try:
        return int(float(texto))
    except ValueError:
        return 0


def parse_cursor(cursor: str | None) -> int:
    if cursor is None:
        return 0
    try:
        return int(cursor)
    except ValueError as exc:
        raise ValueError(f"Cursor remoto inválido: {cursor!r}") from exc


def format_cursor(revision: int) -> str | None:
    if revision <= 0:
        return None
    return str(revision)


def remote_record_from_row(row: dict[str, str]) -> RemoteRecord:
    """Traduce una fila de la hoja; lanza ``ValueError`` si falta algo esencial."""
    record_id = row.get("id", "").strip()
    if not record_id:
        raise ValueError("Fila sin id")
    purchase_date = parse_date(row.get("purchase_date"))
    expiration_date = parse_date(row.get("expiration_date"))
    updated_at = parse_iso(row.get("updated_at"))
    if purchase_date is None or expiration_date is None or updated_at is None:
        raise ValueError(f"Fila incompleta para {record_id}")
    if expiration_date < purchase_date:
        raise ValueError(f"Fila {record_id} con expiración {expiration_date} anterior a la compra {purchase_date}")
    return RemoteRecord(
        id=record_id,
        owner_id=row.get("owner_id", "").strip(),
        product_name=row.get("product_name", ""),
        purchase_date=purchase_date,
        expiration_date=expiration_date,
        updated_at=updated_at,
        receipt_ref=row.get("receipt_ref") or None,
        deleted=parse_bool(row.get("deleted")),
        client_updated_at=parse_iso(row.get("client_updated_at")),
        revision=parse_revision(row.get("revision")),
    )


def remote_row_values(
    headers: list[str],
    record: WarrantyRecord,
    *,
    server_updated_at: datetime,
    revision: int,
) -> list[Any]:
    payload: dict[str, Any] = {
        "id": record.id,
        "owner_id": record.owner_id,
        "product_name": record.product_name,
        "purchase_date": record.purchase_date.isoformat(),
        "expiration_date": record.expiration_date.isoformat(),
        "receipt_ref": record.receipt_ref or "",
        "updated_at": to_iso(server_updated_at),
        "client_updated_at": to_iso(record.updated_at),
        "deleted": 1 if record.deleted else 0,
        "revision": revision,
    }
    return [payload.get(header, "") for header in headers]
