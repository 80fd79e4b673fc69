from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from mywarranties.domain.models import RemoteRecord, SyncState, WarrantyRecord

PullCommand = Literal[
    "SKIP",
    "INSERT_LOCAL",
    "UPDATE_LOCAL",
    "PURGE_LOCAL",
    "ACK_ECHO",
    "REFRESH_CONFLICT",
    "RESOLVE_REMOTE_WINS",
    "RESOLVE_LOCAL_WINS",
]


@dataclass(frozen=True)
class PullAction:
    command: PullCommand
    reason_code: str


def plan_pull_action(local: WarrantyRecord | None, remote: RemoteRecord, *, purged: bool) -> PullAction:
    """Decide qué hacer con una fila remota frente a la copia local.

    Función pura: no toca almacenamiento, así que cada rama se prueba aislada.
    Los empates de ``updated_at`` en un conflicto los gana el remoto.
    """
    if purged:
        return PullAction("SKIP", "purged_id")
    if local is None:
        if remote.deleted:
            return PullAction("SKIP", "remote_tombstone_unknown_locally")
        return PullAction("INSERT_LOCAL", "insert_new_id")
    if local.sync_state == SyncState.CONFLICT:
        return PullAction("REFRESH_CONFLICT", "local_in_conflict")
    if local.sync_state == SyncState.CLEAN:
        if remote.updated_at <= local.updated_at:
            return PullAction("SKIP", "local_is_newer_or_equal")
        if remote.deleted:
            return PullAction("PURGE_LOCAL", "remote_tombstone")
        return PullAction("UPDATE_LOCAL", "remote_newer")
    return _plan_for_pending(local, remote)


def _plan_for_pending(local: WarrantyRecord, remote: RemoteRecord) -> PullAction:
    if local.base_updated_at is not None and remote.updated_at <= local.base_updated_at:
        return PullAction("SKIP", "remote_not_past_base")
    if remote.client_updated_at is not None and remote.client_updated_at == local.updated_at and local.same_content(remote):
        return PullAction("ACK_ECHO", "own_mutation_already_applied")
    if local.updated_at > remote.updated_at:
        return PullAction("RESOLVE_LOCAL_WINS", "concurrent_edit_local_newer")
    return PullAction("RESOLVE_REMOTE_WINS", "concurrent_edit_remote_newer")
