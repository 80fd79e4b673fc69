from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from mywarranties.core.errors import ValidationError
from mywarranties.domain.time_utils import parse_date, parse_iso, to_iso


class SyncState(str, Enum):
    CLEAN = "clean"
    PENDING_CREATE = "pending_create"
    PENDING_UPDATE = "pending_update"
    PENDING_DELETE = "pending_delete"
    CONFLICT = "conflict"

    @property
    def is_pending(self) -> bool:
        return self in PENDING_STATES


PENDING_STATES = frozenset({SyncState.PENDING_CREATE, SyncState.PENDING_UPDATE, SyncState.PENDING_DELETE})


class TriggerState(str, Enum):
    SCHEDULED = "scheduled"
    FIRED = "fired"
    SUPERSEDED = "superseded"


class ConflictPolicy(str, Enum):
    REMOTE_WINS = "remote_wins"
    SURFACE = "surface"


@dataclass(frozen=True)
class WarrantyRecord:
    """Garantía de un producto comprado tal y como vive en la caché local.

    ``base_updated_at`` guarda el ``updated_at`` remoto contra el que se
    reconcilió la copia local por última vez; una mutación pendiente entra en
    conflicto cuando el remoto avanza más allá de esa base.
    """

    id: str
    owner_id: str
    product_name: str
    purchase_date: date
    expiration_date: date
    updated_at: datetime
    receipt_ref: Optional[str] = None
    deleted: bool = False
    sync_state: SyncState = SyncState.PENDING_CREATE
    base_updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValidationError("El registro necesita un id.")
        if self.expiration_date < self.purchase_date:
            raise ValidationError(
                f"La fecha de expiración ({self.expiration_date}) es anterior a la de compra ({self.purchase_date})."
            )

    def with_changes(self, **changes: Any) -> "WarrantyRecord":
        return replace(self, **changes)

    def same_content(self, other: "WarrantyRecord | RemoteRecord") -> bool:
        return content_snapshot(self) == content_snapshot(other)


@dataclass(frozen=True)
class RemoteRecord:
    """Fila remota: contenido más metadatos asignados por el servidor."""

    id: str
    owner_id: str
    product_name: str
    purchase_date: date
    expiration_date: date
    updated_at: datetime
    receipt_ref: Optional[str] = None
    deleted: bool = False
    client_updated_at: Optional[datetime] = None
    revision: int = 0

    def to_local(self, sync_state: SyncState = SyncState.CLEAN) -> WarrantyRecord:
        return WarrantyRecord(
            id=self.id,
            owner_id=self.owner_id,
            product_name=self.product_name,
            purchase_date=self.purchase_date,
            expiration_date=self.expiration_date,
            updated_at=self.updated_at,
            receipt_ref=self.receipt_ref,
            deleted=self.deleted,
            sync_state=sync_state,
            base_updated_at=self.updated_at,
        )


@dataclass(frozen=True)
class RemoteAck:
    remote_updated_at: datetime
    applied: bool = True


@dataclass(frozen=True)
class ReminderTrigger:
    record_id: str
    fire_at: datetime
    expiration_date: date
    generation: int
    fired: bool = False
    state: TriggerState = TriggerState.SCHEDULED
    fired_at: Optional[datetime] = None

    @property
    def is_live(self) -> bool:
        return self.state == TriggerState.SCHEDULED and not self.fired


@dataclass(frozen=True)
class ScheduledTicket:
    """Lo que se entrega al mecanismo de alarmas: id, generación y hora."""

    record_id: str
    generation: int
    fire_at: datetime


@dataclass(frozen=True)
class RenderedNotification:
    title: str
    body: str
    record_id: str
    image_ref: Optional[str] = None


@dataclass(frozen=True)
class ConflictEntry:
    id: int
    record_id: str
    reason: str
    local_snapshot: dict[str, Any]
    remote_snapshot: dict[str, Any]
    detected_at: str


@dataclass(frozen=True)
class SyncConfig:
    spreadsheet_id: str
    credentials_path: str
    owner_id: str
    device_id: str = ""
    lead_time_days: int = 30
    sync_interval_minutes: int = 15
    conflict_policy: ConflictPolicy = ConflictPolicy.REMOTE_WINS

    def __post_init__(self) -> None:
        if self.lead_time_days < 1:
            raise ValidationError("lead_time_days debe ser al menos 1 para disparar antes de la expiración.")
        if self.sync_interval_minutes < 1:
            raise ValidationError("sync_interval_minutes debe ser al menos 1.")


def content_snapshot(record: WarrantyRecord | RemoteRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "owner_id": record.owner_id,
        "product_name": record.product_name,
        "purchase_date": record.purchase_date.isoformat(),
        "expiration_date": record.expiration_date.isoformat(),
        "receipt_ref": record.receipt_ref,
        "deleted": bool(record.deleted),
    }


def record_snapshot(record: WarrantyRecord | RemoteRecord) -> dict[str, Any]:
    snapshot = content_snapshot(record)
    snapshot["updated_at"] = to_iso(record.updated_at)
    return snapshot


def record_from_snapshot(snapshot: dict[str, Any], sync_state: SyncState, base_updated_at: datetime | None) -> WarrantyRecord:
    updated_at = parse_iso(snapshot.get("updated_at"))
    purchase_date = parse_date(snapshot.get("purchase_date"))
    expiration_date = parse_date(snapshot.get("expiration_date"))
    if updated_at is None or purchase_date is None or expiration_date is None:
        raise ValidationError(f"Snapshot incompleto para {snapshot.get('id')!r}.")
    return WarrantyRecord(
        id=str(snapshot["id"]),
        owner_id=str(snapshot.get("owner_id", "")),
        product_name=str(snapshot.get("product_name", "")),
        purchase_date=purchase_date,
        expiration_date=expiration_date,
        updated_at=updated_at,
        receipt_ref=snapshot.get("receipt_ref") or None,
        deleted=bool(snapshot.get("deleted", False)),
        sync_state=sync_state,
        base_updated_at=base_updated_at,
    )
