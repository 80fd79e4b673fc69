from __future__ import annotations

from datetime import date, datetime, timedelta

from mywarranties.domain.models import RenderedNotification, WarrantyRecord
from mywarranties.domain.time_utils import start_of_day_utc


def compute_fire_at(expiration_date: date, lead_time_days: int) -> datetime:
    """Medianoche UTC de ``expiration_date - lead_time_days``.

    Con ``lead_time_days >= 1`` el resultado queda siempre estrictamente antes
    del inicio del día de expiración.
    """
    if lead_time_days < 1:
        raise ValueError("lead_time_days debe ser al menos 1.")
    return start_of_day_utc(expiration_date - timedelta(days=lead_time_days))


def days_until(expiration_date: date, now: datetime) -> int:
    return (expiration_date - now.date()).days


def render_notification(record: WarrantyRecord, now: datetime) -> RenderedNotification:
    remaining = days_until(record.expiration_date, now)
    if remaining > 1:
        body = f"La garantía vence en {remaining} días ({record.expiration_date.isoformat()})."
    elif remaining == 1:
        body = f"La garantía vence mañana ({record.expiration_date.isoformat()})."
    elif remaining == 0:
        body = "La garantía vence hoy."
    else:
        body = f"La garantía venció el {record.expiration_date.isoformat()}."
    return RenderedNotification(
        title=f"Garantía de {record.product_name}",
        body=body,
        record_id=record.id,
        image_ref=record.receipt_ref,
    )
