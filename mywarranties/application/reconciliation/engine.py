from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future
from datetime import datetime
from typing import Callable

from mywarranties.application.reconciliation.pull_planner import plan_pull_action
from mywarranties.application.reconciliation.retry import (
    CancellationToken,
    RetryOutcome,
    RetryPolicy,
    SyncCancelledError,
    call_with_retry,
    raise_if_cancelled,
)
from mywarranties.bootstrap.logging import log_operational_error
from mywarranties.core.errors import BusinessError, InfraError, RejectedError, TransientError, ValidationError
from mywarranties.core.metrics import MetricsRegistry, metrics_registry
from mywarranties.core.observability import OperationContext, log_event
from mywarranties.domain.models import (
    ConflictPolicy,
    RemoteAck,
    RemoteRecord,
    SyncState,
    WarrantyRecord,
    record_snapshot,
)
from mywarranties.domain.ports import ConflictsRepository, RecordStore, RemoteSyncClient, SyncStateStore
from mywarranties.domain.sync_models import CycleResult, CycleStatus, SyncSummary
from mywarranties.domain.time_utils import to_iso, utc_now
from mywarranties.core.structured_log import StructuredFileLogger

logger = logging.getLogger(__name__)

COALESCED_METRIC = "reconciliation.cycles_coalesced"
PENDING_GAUGE = "reconciliation.pending_records"

PullHandler = Callable[[WarrantyRecord | None, RemoteRecord, SyncSummary], None]


class ReconciliationEngine:
    """Ciclo pull → push → purga de tombstones contra el almacén remoto.

    El cursor entra y sale explícitamente en ``reconcile``; ``cycle`` lo lee y
    lo persiste en ``sync_state``. Las llamadas remotas se hacen siempre sin
    locks tomados: el lock de registro solo envuelve el read-modify-write local.
    """

    def __init__(
        self,
        store: RecordStore,
        remote: RemoteSyncClient,
        conflicts: ConflictsRepository,
        sync_state: SyncStateStore,
        *,
        conflict_policy: ConflictPolicy = ConflictPolicy.REMOTE_WINS,
        retry_policy: RetryPolicy | None = None,
        sleeper: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
        metrics: MetricsRegistry | None = None,
        structured_logger: StructuredFileLogger | None = None,
    ) -> None:
        self._store = store
        self._remote = remote
        self._conflicts = conflicts
        self._sync_state = sync_state
        self._conflict_policy = ConflictPolicy(conflict_policy)
        self._retry_policy = retry_policy or RetryPolicy()
        self._sleeper = sleeper
        self._clock = clock
        self._metrics = metrics or metrics_registry
        self._structured_logger = structured_logger
        self._cycle_lock = threading.Lock()
        self._in_flight: Future[CycleResult] | None = None
        self._pull_handlers: dict[str, PullHandler] = {
            "SKIP": self._on_skip,
            "INSERT_LOCAL": self._on_insert_local,
            "UPDATE_LOCAL": self._on_update_local,
            "PURGE_LOCAL": self._on_purge_local,
            "ACK_ECHO": self._on_ack_echo,
            "REFRESH_CONFLICT": self._on_refresh_conflict,
            "RESOLVE_REMOTE_WINS": self._on_remote_wins,
            "RESOLVE_LOCAL_WINS": self._on_local_wins,
        }

    @property
    def conflict_policy(self) -> ConflictPolicy:
        return self._conflict_policy

    def cycle(self, cancellation_token: CancellationToken | None = None) -> CycleResult:
        """Ciclo completo con el cursor persistido.

        Si ya hay un ciclo en vuelo, esta llamada se une a él y devuelve su
        mismo resultado en lugar de lanzar otro.
        """
        with self._cycle_lock:
            in_flight = self._in_flight
            if in_flight is None:
                future: Future[CycleResult] = Future()
                self._in_flight = future
        if in_flight is not None:
            self._metrics.incrementar(COALESCED_METRIC)
            logger.info("Ciclo en curso; se reutiliza su resultado")
            return in_flight.result()

        try:
            cursor = self._sync_state.load_cursor()
            result = self.reconcile(cursor, cancellation_token)
            if result.status != "cancelled" and result.cursor is not None and result.cursor != cursor:
                self._sync_state.save_cursor(result.cursor)
            future.set_result(result)
            return result
        except BaseException as exc:
            future.set_exception(exc)
            raise
        finally:
            with self._cycle_lock:
                self._in_flight = None

    def reconcile(self, cursor: str | None, cancellation_token: CancellationToken | None = None) -> CycleResult:
        started_at = self._clock()
        started_perf = time.perf_counter()
        summary = SyncSummary()
        outcome = RetryOutcome()
        errors: list[str] = []
        rejected_ids: list[str] = []
        new_cursor = cursor
        status: CycleStatus = "ok"

        with OperationContext("sync_cycle") as operation:
            self._log("sync_started", cursor=cursor, policy=self._conflict_policy.value)
            try:
                new_cursor = self._pull(cursor, cancellation_token, summary, outcome)
                deferred = self._push(cancellation_token, summary, errors, rejected_ids, outcome)
                if deferred:
                    status = "deferred"
                self._purge_tombstones(cancellation_token, summary)
            except SyncCancelledError:
                status = "cancelled"
                new_cursor = cursor
                self._log("sync_cancelled")
            except TransientError as exc:
                status = "deferred"
                errors.append(str(exc))
                logger.warning("Ciclo aplazado por fallo transitorio: %s", exc)
            except InfraError as exc:
                status = "failed"
                errors.append(str(exc))
                log_operational_error(
                    logger,
                    "Sync failed: ciclo de reconciliación interrumpido",
                    exc=exc,
                    extra={"operation": "sync_cycle", "cursor": cursor},
                )

            summary.transient_failures = outcome.transient_failures
            result = CycleResult(
                cursor=new_cursor,
                status=status,
                summary=summary,
                started_at=to_iso(started_at) or "",
                finished_at=to_iso(self._clock()) or "",
                correlation_id=operation.correlation_id,
                errors=tuple(errors),
                rejected_ids=tuple(rejected_ids),
                attempts=outcome.attempts,
            )
            self._record_metrics(result, (time.perf_counter() - started_perf) * 1000)
            self._log("sync_finished", status=status, cursor=new_cursor, summary=result.to_dict()["summary"])
            return result

    def _pull(
        self,
        cursor: str | None,
        token: CancellationToken | None,
        summary: SyncSummary,
        outcome: RetryOutcome,
    ) -> str | None:
        changes, new_cursor = call_with_retry(
            lambda: self._remote.fetch_changes_since(cursor),
            policy=self._retry_policy,
            operation_name="fetch_changes_since",
            sleeper=self._sleeper,
            cancellation_token=token,
            outcome=outcome,
        )
        for remote in changes:
            raise_if_cancelled(token)
            self._apply_remote(remote, summary)
        return new_cursor

    def _apply_remote(self, remote: RemoteRecord, summary: SyncSummary) -> None:
        with self._store.record_lock(remote.id):
            local = self._store.find(remote.id)
            action = plan_pull_action(local, remote, purged=self._store.is_purged(remote.id))
            logger.debug("pull %s -> %s (%s)", remote.id, action.command, action.reason_code)
            try:
                self._pull_handlers[action.command](local, remote, summary)
            except BusinessError as exc:
                summary.skipped += 1
                logger.warning(
                    "Cambio remoto descartado: %s",
                    exc,
                    extra={"extra": {"record_id": remote.id, "command": action.command}},
                )

    def _on_skip(self, local: WarrantyRecord | None, remote: RemoteRecord, summary: SyncSummary) -> None:
        summary.skipped += 1

    def _on_insert_local(self, local: WarrantyRecord | None, remote: RemoteRecord, summary: SyncSummary) -> None:
        self._store.upsert(remote.to_local(SyncState.CLEAN), SyncState.CLEAN)
        summary.inserted_local += 1

    def _on_update_local(self, local: WarrantyRecord | None, remote: RemoteRecord, summary: SyncSummary) -> None:
        self._store.upsert(remote.to_local(SyncState.CLEAN), SyncState.CLEAN)
        summary.updated_local += 1

    def _on_purge_local(self, local: WarrantyRecord | None, remote: RemoteRecord, summary: SyncSummary) -> None:
        self._store.upsert(remote.to_local(SyncState.CLEAN), SyncState.CLEAN)
        self._store.purge_tombstone(remote.id)
        summary.purged_local += 1

    def _on_ack_echo(self, local: WarrantyRecord | None, remote: RemoteRecord, summary: SyncSummary) -> None:
        self._store.mark_synced(remote.id, remote.updated_at)
        summary.push_replays += 1

    def _on_refresh_conflict(self, local: WarrantyRecord | None, remote: RemoteRecord, summary: SyncSummary) -> None:
        if local is None:
            return
        if not self._conflicts.refresh_remote_snapshot(remote.id, record_snapshot(remote)):
            self._conflicts.register(remote.id, "concurrent_edit", record_snapshot(local), record_snapshot(remote))
        summary.skipped += 1

    def _on_remote_wins(self, local: WarrantyRecord | None, remote: RemoteRecord, summary: SyncSummary) -> None:
        if local is None:
            return
        summary.conflicts_detected += 1
        if self._conflict_policy == ConflictPolicy.SURFACE:
            with self._store.atomic():
                self._store.upsert(remote.to_local(SyncState.CONFLICT), SyncState.CONFLICT)
                self._conflicts.register(remote.id, "concurrent_edit", record_snapshot(local), record_snapshot(remote))
        else:
            self._store.upsert(remote.to_local(SyncState.CLEAN), SyncState.CLEAN)
        self._log(
            "conflict_resolved",
            record_id=remote.id,
            winner="remote",
            policy=self._conflict_policy.value,
            local_updated_at=to_iso(local.updated_at),
            remote_updated_at=to_iso(remote.updated_at),
        )

    def _on_local_wins(self, local: WarrantyRecord | None, remote: RemoteRecord, summary: SyncSummary) -> None:
        if local is None:
            return
        summary.conflicts_detected += 1
        summary.conflicts_local_won += 1
        state = SyncState.PENDING_DELETE if local.deleted else SyncState.PENDING_UPDATE
        rebased = local.with_changes(base_updated_at=remote.updated_at)
        if self._conflict_policy == ConflictPolicy.SURFACE:
            with self._store.atomic():
                self._store.upsert(rebased, state)
                self._conflicts.register(remote.id, "concurrent_edit", record_snapshot(local), record_snapshot(remote))
        else:
            self._store.upsert(rebased, state)
        self._log(
            "conflict_resolved",
            record_id=remote.id,
            winner="local",
            policy=self._conflict_policy.value,
            local_updated_at=to_iso(local.updated_at),
            remote_updated_at=to_iso(remote.updated_at),
        )

    def _push(
        self,
        token: CancellationToken | None,
        summary: SyncSummary,
        errors: list[str],
        rejected_ids: list[str],
        outcome: RetryOutcome,
    ) -> bool:
        """Envía los pendientes. Devuelve True si el ciclo queda aplazado."""
        for pending in self._store.list_pending():
            raise_if_cancelled(token)
            try:
                ack = call_with_retry(
                    lambda: self._remote.push(pending),
                    policy=self._retry_policy,
                    operation_name=f"push({pending.id})",
                    sleeper=self._sleeper,
                    cancellation_token=token,
                    outcome=outcome,
                )
            except TransientError as exc:
                errors.append(f"{pending.id}: {exc}")
                self._log("push_deferred", record_id=pending.id, error=str(exc))
                return True
            except RejectedError as exc:
                errors.append(f"{pending.id}: {exc}")
                rejected_ids.append(pending.id)
                self._on_rejected(pending, exc, summary)
                continue
            self._apply_ack(pending, ack, summary)
        return False

    def _apply_ack(self, pushed: WarrantyRecord, ack: RemoteAck, summary: SyncSummary) -> None:
        with self._store.record_lock(pushed.id):
            current = self._store.find(pushed.id)
            if current is None:
                return
            unchanged = (
                current.sync_state == pushed.sync_state
                and current.updated_at == pushed.updated_at
                and current.same_content(pushed)
            )
            if unchanged:
                self._store.mark_synced(pushed.id, ack.remote_updated_at)
            else:
                state = SyncState.PENDING_UPDATE if current.sync_state == SyncState.PENDING_CREATE else current.sync_state
                self._store.upsert(current.with_changes(base_updated_at=ack.remote_updated_at), state)
                logger.info(
                    "Registro modificado durante el push; sigue pendiente",
                    extra={"extra": {"record_id": pushed.id}},
                )
        if ack.applied:
            summary.pushed += 1
        else:
            summary.push_replays += 1

    def _on_rejected(self, pending: WarrantyRecord, exc: RejectedError, summary: SyncSummary) -> None:
        with self._store.record_lock(pending.id):
            current = self._store.find(pending.id) or pending
            with self._store.atomic():
                self._store.upsert(current, SyncState.CONFLICT)
                self._conflicts.register(pending.id, "rejected", record_snapshot(current), {})
        summary.rejected += 1
        log_operational_error(
            logger,
            "Push rechazado por el remoto",
            exc=exc,
            extra={"operation": "push", "record_id": pending.id},
        )

    def _purge_tombstones(self, token: CancellationToken | None, summary: SyncSummary) -> None:
        for record in self._store.list_all(include_deleted=True):
            if not record.deleted or record.sync_state != SyncState.CLEAN:
                continue
            raise_if_cancelled(token)
            try:
                self._store.purge_tombstone(record.id)
            except ValidationError as exc:
                logger.info("Tombstone no purgable todavía: %s", exc)
                continue
            summary.tombstones_purged += 1

    def _record_metrics(self, result: CycleResult, elapsed_ms: float) -> None:
        self._metrics.incrementar("reconciliation.cycles")
        self._metrics.incrementar(f"reconciliation.cycles_{result.status}")
        self._metrics.incrementar("reconciliation.records_pushed", result.summary.pushed)
        self._metrics.incrementar("reconciliation.records_downloaded", result.summary.downloaded)
        self._metrics.incrementar("reconciliation.conflicts", result.summary.conflicts_detected)
        self._metrics.incrementar("reconciliation.rejected", result.summary.rejected)
        self._metrics.registrar_tiempo("reconciliation.cycle_ms", elapsed_ms)
        self._metrics.fijar(PENDING_GAUGE, len(self._store.list_pending()))

    def _log(self, event: str, **payload: object) -> None:
        log_event(logger, event, dict(payload))
        if self._structured_logger:
            try:
                self._structured_logger.log(event, **payload)
            except OSError as exc:
                logger.warning("Auditoría de sync no escrita (%s): %s", event, exc)


