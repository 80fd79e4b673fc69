from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable, Literal

from mywarranties.bootstrap.logging import log_operational_error
from mywarranties.core.errors import ValidationError
from mywarranties.core.locks import KeyedLocks
from mywarranties.core.metrics import MetricsRegistry, metrics_registry
from mywarranties.core.observability import OperationContext, log_event
from mywarranties.domain.models import ReminderTrigger, ScheduledTicket, TriggerState, WarrantyRecord
from mywarranties.domain.ports import (
    AlarmScheduler,
    NotificationDispatcher,
    RecordStore,
    SyncStateStore,
    TriggerRepository,
)
from mywarranties.domain.reminders import compute_fire_at, render_notification
from mywarranties.domain.sync_models import FireReport
from mywarranties.domain.time_utils import ensure_utc, to_iso, utc_now

logger = logging.getLogger(__name__)

GENERATION_FLOOR_KEY = "generation_floor"
LIVE_TRIGGERS_GAUGE = "scheduler.live_triggers"

FireOutcome = Literal["fired", "skipped", "failed"]


class ExpirationScheduler:
    """Dueño de las filas ``reminder_triggers``.

    Cada trigger lleva una generación. Reprogramar o invalidar sube la
    generación, así que un callback de alarma antiguo nunca coincide con el
    trigger vigente y se descarta sin efectos. Los registros solo se leen.
    """

    def __init__(
        self,
        triggers: TriggerRepository,
        store: RecordStore,
        dispatcher: NotificationDispatcher,
        alarms: AlarmScheduler,
        sync_state: SyncStateStore,
        *,
        lead_time_days: int = 30,
        clock: Callable[[], datetime] = utc_now,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        if lead_time_days < 1:
            raise ValidationError("lead_time_days debe ser al menos 1 para disparar antes de la expiración.")
        self._triggers = triggers
        self._store = store
        self._dispatcher = dispatcher
        self._alarms = alarms
        self._sync_state = sync_state
        self._lead_time_days = lead_time_days
        self._clock = clock
        self._metrics = metrics or metrics_registry
        self._locks = KeyedLocks()

    @property
    def lead_time_days(self) -> int:
        return self._lead_time_days

    def recompute(self, records: Iterable[WarrantyRecord]) -> list[ScheduledTicket]:
        """Alinea los triggers con ``records``; con datos sin cambios no escribe nada."""
        floor = self._generation_floor()
        tickets: list[ScheduledTicket] = []
        seen: set[str] = set()
        with OperationContext("scheduler_recompute"):
            for record in records:
                seen.add(record.id)
                ticket = self._recompute_one(record, floor)
                if ticket is not None:
                    self._alarms.schedule(ticket)
                    tickets.append(ticket)
            for trigger in self._triggers.list_all():
                if trigger.record_id not in seen:
                    with self._locks.hold(trigger.record_id):
                        self._supersede(self._triggers.get(trigger.record_id), reason="record_missing")
            if tickets:
                self._metrics.incrementar("scheduler.armed", len(tickets))
                log_event(logger, "triggers_armed", {"count": len(tickets), "record_ids": [t.record_id for t in tickets]})
            self._update_live_gauge()
        return tickets

    def _recompute_one(self, record: WarrantyRecord, floor: int) -> ScheduledTicket | None:
        with self._locks.hold(record.id):
            existing = self._triggers.get(record.id)
            if record.deleted:
                self._supersede(existing, reason="record_deleted")
                return None
            fire_at = compute_fire_at(record.expiration_date, self._lead_time_days)
            if (
                existing is not None
                and existing.state != TriggerState.SUPERSEDED
                and existing.fire_at == fire_at
                and existing.expiration_date == record.expiration_date
            ):
                return None
            generation = max(existing.generation if existing else 0, floor) + 1
            self._triggers.save(
                ReminderTrigger(
                    record_id=record.id,
                    fire_at=fire_at,
                    expiration_date=record.expiration_date,
                    generation=generation,
                )
            )
            return ScheduledTicket(record_id=record.id, generation=generation, fire_at=fire_at)

    def _supersede(self, trigger: ReminderTrigger | None, *, reason: str) -> None:
        if trigger is None or not trigger.is_live:
            return
        self._triggers.save(
            ReminderTrigger(
                record_id=trigger.record_id,
                fire_at=trigger.fire_at,
                expiration_date=trigger.expiration_date,
                generation=trigger.generation + 1,
                fired=False,
                state=TriggerState.SUPERSEDED,
            )
        )
        self._metrics.incrementar("scheduler.superseded")
        logger.info(
            "Trigger invalidado",
            extra={"extra": {"record_id": trigger.record_id, "generation": trigger.generation + 1, "reason": reason}},
        )

    def on_fire(self, record_id: str, generation: int, now: datetime | None = None) -> bool:
        """Callback de alarma. Solo notifica si la generación sigue vigente."""
        return self._fire(record_id, generation, now) == "fired"

    def _fire(self, record_id: str, generation: int, now: datetime | None) -> FireOutcome:
        fired_at = ensure_utc(now or self._clock())
        with OperationContext("reminder_fire"):
            with self._locks.hold(record_id):
                trigger = self._triggers.get(record_id)
                if trigger is None or not trigger.is_live or trigger.generation != generation:
                    self._metrics.incrementar("scheduler.stale_fires")
                    logger.info(
                        "Disparo obsoleto ignorado",
                        extra={"extra": {"record_id": record_id, "generation": generation}},
                    )
                    return "skipped"
                if fired_at < trigger.fire_at:
                    logger.info(
                        "Disparo anticipado ignorado",
                        extra={"extra": {"record_id": record_id, "fire_at": to_iso(trigger.fire_at)}},
                    )
                    return "skipped"
                record = self._store.find(record_id)
                if record is None or record.deleted:
                    self._supersede(trigger, reason="record_missing")
                    return "skipped"
                if not self._triggers.mark_fired_if_current(record_id, generation, fired_at):
                    return "skipped"

            notification = render_notification(record, fired_at)
            try:
                self._dispatcher.dispatch(notification)
            except Exception as exc:  # noqa: BLE001 - el dispatcher es un colaborador externo
                self._triggers.revert_fired(record_id, generation)
                self._metrics.incrementar("scheduler.dispatch_failures")
                log_operational_error(
                    logger,
                    "No se pudo entregar la notificación; se reintentará",
                    exc=exc,
                    extra={"operation": "reminder_fire", "record_id": record_id, "generation": generation},
                )
                return "failed"

            self._metrics.incrementar("scheduler.fired")
            log_event(logger, "reminder_fired", {"record_id": record_id, "generation": generation})
            return "fired"

    def fire_due(self, now: datetime | None = None) -> FireReport:
        """Dispara todo trigger vencido en su generación actual (arranque, vuelta de offline)."""
        moment = ensure_utc(now or self._clock())
        fired: list[str] = []
        skipped: list[str] = []
        failed: list[str] = []
        live = len(self.pending_tickets())
        for trigger in self._triggers.list_due(moment):
            outcome = self._fire(trigger.record_id, trigger.generation, moment)
            if outcome == "fired":
                fired.append(trigger.record_id)
            elif outcome == "failed":
                failed.append(trigger.record_id)
            else:
                skipped.append(trigger.record_id)
        self._metrics.fijar(LIVE_TRIGGERS_GAUGE, live - len(fired))
        return FireReport(fired=tuple(fired), skipped=tuple(skipped), failed=tuple(failed))

    def pending_tickets(self) -> list[ScheduledTicket]:
        return [
            ScheduledTicket(record_id=trigger.record_id, generation=trigger.generation, fire_at=trigger.fire_at)
            for trigger in self._triggers.list_all()
            if trigger.is_live
        ]

    def restore_alarms(self) -> list[ScheduledTicket]:
        """Tras reiniciar el proceso, vuelve a entregar los tickets vivos al mecanismo de alarmas."""
        tickets = self.pending_tickets()
        for ticket in tickets:
            self._alarms.schedule(ticket)
        return tickets

    def rebuild(self, records: Iterable[WarrantyRecord]) -> list[ScheduledTicket]:
        """Descarta todos los triggers y los recalcula por encima del suelo de generación."""
        floor = max(self._generation_floor(), self._triggers.max_generation())
        self._sync_state.set_value(GENERATION_FLOOR_KEY, str(floor))
        self._triggers.delete_all()
        self._metrics.incrementar("scheduler.rebuilds")
        logger.warning("Triggers reconstruidos", extra={"extra": {"generation_floor": floor}})
        return self.recompute(records)

    def _update_live_gauge(self) -> None:
        self._metrics.fijar(LIVE_TRIGGERS_GAUGE, len(self.pending_tickets()))

    def _generation_floor(self) -> int:
        raw = self._sync_state.get_value(GENERATION_FLOOR_KEY)
        if raw is None:
            return 0
        try:
            return int(raw)
        except ValueError:
            return 0
