from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

CycleStatus = Literal["ok", "deferred", "failed", "cancelled"]


@dataclass
class SyncSummary:
    inserted_local: int = 0
    updated_local: int = 0
    purged_local: int = 0
    pushed: int = 0
    push_replays: int = 0
    conflicts_detected: int = 0
    conflicts_local_won: int = 0
    rejected: int = 0
    tombstones_purged: int = 0
    transient_failures: int = 0
    skipped: int = 0

    @property
    def downloaded(self) -> int:
        return self.inserted_local + self.updated_local + self.purged_local

    @property
    def has_local_writes(self) -> bool:
        return bool(self.downloaded or self.pushed or self.conflicts_detected or self.rejected or self.tombstones_purged)


@dataclass(frozen=True)
class CycleResult:
    """Resultado de un ciclo de reconciliación.

    ``cursor`` es el cursor que el llamador debe persistir; cuando el pull no
    llega a completarse se devuelve el cursor de entrada sin cambios.
    """

    cursor: str | None
    status: CycleStatus
    summary: SyncSummary
    started_at: str
    finished_at: str
    correlation_id: str = ""
    errors: tuple[str, ...] = ()
    rejected_ids: tuple[str, ...] = ()
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["summary"]["downloaded"] = self.summary.downloaded
        return payload


@dataclass(frozen=True)
class FireReport:
    fired: tuple[str, ...] = ()
    skipped: tuple[str, ...] = ()
    failed: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {"fired": list(self.fired), "skipped": list(self.skipped), "failed": list(self.failed)}


@dataclass(frozen=True)
class SyncRunReport:
    cycle: CycleResult
    armed: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {"cycle": self.cycle.to_dict(), "armed": list(self.armed)}
