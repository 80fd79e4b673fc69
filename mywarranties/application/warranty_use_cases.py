from __future__ import annotations

import logging
import uuid
from datetime import date, datetime
from typing import Any, Callable

from mywarranties.core.errors import ConflictError, ValidationError
from mywarranties.domain.models import SyncState, WarrantyRecord
from mywarranties.domain.ports import RecordStore
from mywarranties.domain.time_utils import add_months, next_timestamp, parse_date, utc_now

logger = logging.getLogger(__name__)

_EDITABLE_FIELDS = frozenset({"product_name", "purchase_date", "expiration_date", "receipt_ref"})


def _resolve_expiration(purchase_date: date, expiration_date: date | None, warranty_months: int | None) -> date:
    if expiration_date is not None:
        return expiration_date
    if warranty_months is None:
        raise ValidationError("Indica la fecha de expiración o los meses de garantía.")
    return add_months(purchase_date, warranty_months)


class WarrantyUseCases:
    """Mutaciones locales del usuario. Todas quedan pendientes de sincronizar."""

    def __init__(
        self,
        store: RecordStore,
        owner_id_provider: Callable[[], str],
        *,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self._store = store
        self._owner_id_provider = owner_id_provider
        self._clock = clock
        self._id_factory = id_factory

    def create(
        self,
        product_name: str,
        purchase_date: date | str,
        *,
        expiration_date: date | str | None = None,
        warranty_months: int | None = None,
        receipt_ref: str | None = None,
    ) -> WarrantyRecord:
        nombre = (product_name or "").strip()
        if not nombre:
            raise ValidationError("El nombre del producto es obligatorio.")
        try:
            purchase = parse_date(purchase_date)
            if purchase is None:
                raise ValidationError("La fecha de compra es obligatoria.")
            expiration = _resolve_expiration(purchase, parse_date(expiration_date), warranty_months)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        owner_id = self._owner_id_provider()
        if not owner_id:
            raise ValidationError("No hay owner_id configurado.")
        record = WarrantyRecord(
            id=self._id_factory(),
            owner_id=owner_id,
            product_name=nombre,
            purchase_date=purchase,
            expiration_date=expiration,
            updated_at=self._clock(),
            receipt_ref=receipt_ref or None,
        )
        stored = self._store.upsert(record, SyncState.PENDING_CREATE)
        logger.info("Garantía creada", extra={"extra": {"record_id": stored.id}})
        return stored

    def update(self, record_id: str, **changes: Any) -> WarrantyRecord:
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Campos no editables: {', '.join(sorted(unknown))}")
        normalized = dict(changes)
        for field_name in ("purchase_date", "expiration_date"):
            if field_name in normalized:
                try:
                    normalized[field_name] = parse_date(normalized[field_name])
                except ValueError as exc:
                    raise ValidationError(str(exc)) from exc
                if normalized[field_name] is None:
                    raise ValidationError(f"{field_name} no puede quedar vacío.")
        if "product_name" in normalized:
            normalized["product_name"] = str(normalized["product_name"] or "").strip()
            if not normalized["product_name"]:
                raise ValidationError("El nombre del producto es obligatorio.")
        with self._store.record_lock(record_id):
            current = self._editable(record_id)
            state = SyncState.PENDING_CREATE if current.sync_state == SyncState.PENDING_CREATE else SyncState.PENDING_UPDATE
            updated = current.with_changes(
                updated_at=next_timestamp(current.updated_at, self._clock()),
                **normalized,
            )
            return self._store.upsert(updated, state)

    def attach_receipt(self, record_id: str, receipt_ref: str) -> WarrantyRecord:
        if not receipt_ref:
            raise ValidationError("receipt_ref vacío.")
        return self.update(record_id, receipt_ref=receipt_ref)

    def delete(self, record_id: str) -> WarrantyRecord:
        with self._store.record_lock(record_id):
            current = self._editable(record_id)
            tombstone = current.with_changes(
                deleted=True,
                updated_at=next_timestamp(current.updated_at, self._clock()),
            )
            stored = self._store.upsert(tombstone, SyncState.PENDING_DELETE)
        logger.info("Garantía marcada como borrada", extra={"extra": {"record_id": record_id}})
        return stored

    def get(self, record_id: str) -> WarrantyRecord:
        return self._store.get(record_id)

    def list_active(self) -> list[WarrantyRecord]:
        return self._store.list_all(include_deleted=False)

    def _editable(self, record_id: str) -> WarrantyRecord:
        current = self._store.get(record_id)
        if current.deleted:
            raise ValidationError(f"La garantía {record_id} está borrada.")
        if current.sync_state == SyncState.CONFLICT:
            raise ConflictError(record_id, f"La garantía {record_id} tiene un conflicto pendiente de resolver.")
        return current
