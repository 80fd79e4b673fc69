from __future__ import annotations

import logging
from pathlib import Path

from mywarranties.core.structured_log import StructuredFileLogger
from mywarranties.domain.models import RenderedNotification, ScheduledTicket
from mywarranties.domain.ports import AlarmScheduler, NotificationDispatcher
from mywarranties.domain.time_utils import to_iso

logger = logging.getLogger(__name__)


class JsonlNotificationOutbox(NotificationDispatcher):
    """Deja cada notificación renderizada en un outbox que consume el transporte push."""

    def __init__(self, path: Path) -> None:
        self._writer = StructuredFileLogger(path)

    def dispatch(self, notification: RenderedNotification) -> None:
        self._writer.log(
            "notification",
            record_id=notification.record_id,
            title=notification.title,
            body=notification.body,
            image_ref=notification.image_ref,
            style="big_picture" if notification.image_ref else "big_text",
        )
        logger.info("Notificación encolada", extra={"extra": {"record_id": notification.record_id}})


class JsonlAlarmLog(AlarmScheduler):
    """Registra los tickets armados; el runner en segundo plano dispara con ``fire_due``."""

    def __init__(self, path: Path) -> None:
        self._writer = StructuredFileLogger(path)

    def schedule(self, ticket: ScheduledTicket) -> None:
        self._writer.log(
            "alarm_scheduled",
            record_id=ticket.record_id,
            generation=ticket.generation,
            fire_at=to_iso(ticket.fire_at),
        )
