from __future__ import annotations

import logging
from datetime import datetime

from mywarranties.application.expiration_scheduler import ExpirationScheduler
from mywarranties.application.reconciliation import CancellationToken, ReconciliationEngine
from mywarranties.bootstrap.logging import log_operational_error
from mywarranties.core.errors import PersistenceError
from mywarranties.domain.models import ScheduledTicket
from mywarranties.domain.ports import RecordStore
from mywarranties.domain.sync_models import FireReport, SyncRunReport

logger = logging.getLogger(__name__)


class WarrantySyncService:
    """Fachada del flujo: ciclo de reconciliación y después recálculo de triggers."""

    def __init__(self, engine: ReconciliationEngine, scheduler: ExpirationScheduler, store: RecordStore) -> None:
        self._engine = engine
        self._scheduler = scheduler
        self._store = store

    def start(self) -> SyncRunReport:
        try:
            self._scheduler.restore_alarms()
        except PersistenceError as exc:
            log_operational_error(logger, "Triggers corruptos al arrancar; se reconstruyen", exc=exc)
            self._scheduler.rebuild(self._store.list_all(include_deleted=True))
        return self.run_cycle()

    def on_foreground(self) -> SyncRunReport:
        return self.run_cycle()

    def on_records_changed(self, hint: bool = True) -> SyncRunReport | None:
        if not hint:
            return None
        return self.run_cycle()

    def on_background_tick(self, now: datetime | None = None) -> tuple[SyncRunReport, FireReport]:
        report = self.run_cycle()
        return report, self.fire_due(now)

    def run_cycle(self, cancellation_token: CancellationToken | None = None) -> SyncRunReport:
        result = self._engine.cycle(cancellation_token)
        armed = self.refresh_triggers()
        return SyncRunReport(cycle=result, armed=tuple(ticket.record_id for ticket in armed))

    def refresh_triggers(self) -> list[ScheduledTicket]:
        records = self._store.list_all(include_deleted=True)
        try:
            return self._scheduler.recompute(records)
        except PersistenceError as exc:
            log_operational_error(logger, "Triggers corruptos; se reconstruyen", exc=exc)
            return self._scheduler.rebuild(records)

    def fire_due(self, now: datetime | None = None) -> FireReport:
        try:
            return self._scheduler.fire_due(now)
        except PersistenceError as exc:
            log_operational_error(logger, "Triggers corruptos al disparar; se reconstruyen", exc=exc)
            self._scheduler.rebuild(self._store.list_all(include_deleted=True))
            return self._scheduler.fire_due(now)
