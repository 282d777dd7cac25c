"""
Limites de "hoy" en UTC.

El dia va de medianoche a medianoche UTC, sin importar la zona horaria del
servidor. Todos los filtros de "hoy" (dashboard, contadores) pasan por aca.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Iterable, Mapping, Optional, Tuple, Union

from sqlalchemy import func, select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from nutri.errors import BackingStoreError, InputError, ValidationError
from nutri.models import INACTIVE_STATUSES, Appointment, AppointmentStatus

UTC = timezone.utc

DayBounds = Tuple[datetime, datetime]


def _require_aware(value: datetime) -> datetime:
    if value.tzinfo is None or value.utcoffset() is None:
        raise InputError(f"datetime sin zona horaria: {value.isoformat()}")
    return value


def day_bounds(value: Union[date, datetime]) -> DayBounds:
    """[inicio, fin) del dia UTC que contiene `value`."""
    if isinstance(value, datetime):
        value = _require_aware(value).astimezone(UTC).date()
    if value == date.max:
        raise InputError("el dia siguiente a date.max no es representable")
    start = datetime.combine(value, time.min, tzinfo=UTC)
    return start, start + timedelta(days=1)


def in_day(value: datetime, bounds: DayBounds) -> bool:
    start, end = bounds
    return start <= _require_aware(value) < end


def is_today(value: datetime, now: Optional[datetime] = None) -> bool:
    return in_day(value, day_bounds(now or datetime.now(UTC)))


def is_active_status(status: Union[AppointmentStatus, str]) -> bool:
    try:
        status = AppointmentStatus(status)
    except ValueError as exc:
        raise ValidationError(f"estado de turno desconocido: {status!r}") from exc
    return status not in INACTIVE_STATUSES


def appointment_fields(appt: Any) -> Tuple[datetime, Optional[int], Union[AppointmentStatus, str]]:
    """
    (date_time, duration, status) de un turno ORM o de un dict.
    En dicts acepta `date_time` o `dateTime`; `duration` puede faltar.
    """
    if isinstance(appt, Mapping):
        dt = appt["date_time"] if "date_time" in appt else appt["dateTime"]
        return dt, appt.get("duration"), appt["status"]
    return appt.date_time, appt.duration, appt.status


def count_active_in_day(appointments: Iterable, bounds: DayBounds) -> int:
    """
    Cuenta turnos dentro de `bounds` que no estan cancelados ni ausentes.
    Acepta objetos con `date_time`/`status` o dicts con esas claves.
    """
    total = 0
    for appt in appointments:
        dt, _, status = appointment_fields(appt)
        if in_day(dt, bounds) and is_active_status(status):
            total += 1
    return total


async def count_today_appointments(
    session: AsyncSession,
    nutritionist_id: int,
    now: Optional[datetime] = None,
) -> int:
    start, end = day_bounds(now or datetime.now(UTC))
    try:
        return await session.scalar(
            select(func.count(Appointment.id)).where(
                Appointment.nutritionist_id == nutritionist_id,
                Appointment.date_time >= start,
                Appointment.date_time < end,
                Appointment.status.not_in(INACTIVE_STATUSES),
            )
        ) or 0
    except (DBAPIError, OSError) as exc:
        raise BackingStoreError(f"no se pudo contar turnos de hoy: {exc}") from exc
