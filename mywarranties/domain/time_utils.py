from __future__ import annotations

import calendar
from datetime import date, datetime, time, timedelta, timezone

ONE_MICROSECOND = timedelta(microseconds=1)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Normaliza a UTC; los datetime naive se interpretan como UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_iso(value: object) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    raw = str(value).strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(raw))
    except ValueError as exc:
        raise ValueError(f"Timestamp inválido: {value!r}") from exc


def parse_date(value: object) -> date | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    texto = str(value).strip()
    for formato in ("%Y-%m-%d", "%d/%m/%Y"):
        try:
            return datetime.strptime(texto, formato).date()
        except ValueError:
            continue
    raise ValueError(f"Fecha inválida: {value!r}")


def add_months(base: date, months: int) -> date:
    """Suma meses de calendario recortando al último día del mes destino."""
    if months < 0:
        raise ValueError("Los meses de garantía deben ser no negativos.")
    month_index = base.month - 1 + months
    year = base.year + month_index // 12
    month = month_index % 12 + 1
    day = min(base.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def start_of_day_utc(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def next_timestamp(previous: datetime | None, now: datetime) -> datetime:
    """Devuelve un timestamp estrictamente posterior a ``previous``.

    Protege la monotonía de ``updated_at`` por registro cuando el reloj del
    dispositivo retrocede.
    """
    current = ensure_utc(now)
    if previous is None:
        return current
    floor = ensure_utc(previous) + ONE_MICROSECOND
    return current if current >= floor else floor
