from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from mywarranties.application.reconciliation.pull_planner import plan_pull_action
from mywarranties.domain.models import RemoteRecord, SyncState, WarrantyRecord

BASE = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _local(state: SyncState, *, updated_minutes: int = 0, base_minutes: int | None = 0, **changes) -> WarrantyRecord:
    return WarrantyRecord(
        id="w-1",
        owner_id="owner-1",
        product_name=changes.pop("product_name", "Portátil"),
        purchase_date=date(2024, 1, 10),
        expiration_date=date(2026, 1, 10),
        updated_at=BASE + timedelta(minutes=updated_minutes),
        sync_state=state,
        base_updated_at=None if base_minutes is None else BASE + timedelta(minutes=base_minutes),
        **changes,
    )


def _remote(*, updated_minutes: int, client_minutes: int | None = None, **changes) -> RemoteRecord:
    return RemoteRecord(
        id="w-1",
        owner_id="owner-1",
        product_name=changes.pop("product_name", "Portátil"),
        purchase_date=date(2024, 1, 10),
        expiration_date=date(2026, 1, 10),
        updated_at=BASE + timedelta(minutes=updated_minutes),
        client_updated_at=None if client_minutes is None else BASE + timedelta(minutes=client_minutes),
        revision=3,
        **changes,
    )


@pytest.mark.parametrize(
    ("local", "remote", "purged", "expected_command", "expected_reason"),
    [
        (None, _remote(updated_minutes=1), True, "SKIP", "purged_id"),
        (None, _remote(updated_minutes=1), False, "INSERT_LOCAL", "insert_new_id"),
        (None, _remote(updated_minutes=1, deleted=True), False, "SKIP", "remote_tombstone_unknown_locally"),
        (_local(SyncState.CONFLICT), _remote(updated_minutes=9), False, "REFRESH_CONFLICT", "local_in_conflict"),
        (_local(SyncState.CLEAN, updated_minutes=5), _remote(updated_minutes=5), False, "SKIP", "local_is_newer_or_equal"),
        (_local(SyncState.CLEAN, updated_minutes=5), _remote(updated_minutes=4), False, "SKIP", "local_is_newer_or_equal"),
        (_local(SyncState.CLEAN), _remote(updated_minutes=6), False, "UPDATE_LOCAL", "remote_newer"),
        (_local(SyncState.CLEAN), _remote(updated_minutes=6, deleted=True), False, "PURGE_LOCAL", "remote_tombstone"),
        (
            _local(SyncState.PENDING_UPDATE, updated_minutes=8, base_minutes=5),
            _remote(updated_minutes=5),
            False,
            "SKIP",
            "remote_not_past_base",
        ),
        (
            _local(SyncState.PENDING_CREATE, updated_minutes=8, base_minutes=None),
            _remote(updated_minutes=9, client_minutes=8),
            False,
            "ACK_ECHO",
            "own_mutation_already_applied",
        ),
        (
            _local(SyncState.PENDING_UPDATE, updated_minutes=8, product_name="Local"),
            _remote(updated_minutes=9, client_minutes=8, product_name="Otro"),
            False,
            "RESOLVE_REMOTE_WINS",
            "concurrent_edit_remote_newer",
        ),
        (
            _local(SyncState.PENDING_UPDATE, updated_minutes=10),
            _remote(updated_minutes=7, client_minutes=7),
            False,
            "RESOLVE_LOCAL_WINS",
            "concurrent_edit_local_newer",
        ),
        (
            _local(SyncState.PENDING_DELETE, updated_minutes=7, deleted=True),
            _remote(updated_minutes=7, client_minutes=6),
            False,
            "RESOLVE_REMOTE_WINS",
            "concurrent_edit_remote_newer",
        ),
    ],
)
def test_plan_pull_action_contract(local, remote, purged, expected_command, expected_reason) -> None:
    action = plan_pull_action(local, remote, purged=purged)

    assert action.command == expected_command
    assert action.reason_code == expected_reason


def test_empate_de_updated_at_lo_gana_el_remoto() -> None:
    local = _local(SyncState.PENDING_UPDATE, updated_minutes=7, product_name="Local")
    remote = _remote(updated_minutes=7, client_minutes=3, product_name="Remoto")

    assert plan_pull_action(local, remote, purged=False).command == "RESOLVE_REMOTE_WINS"
