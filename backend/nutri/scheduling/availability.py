"""
Availability Service

Calcula los horarios reservables de un nutricionista para una fecha:
- Plantilla semanal (7 DayAvailability)
- Pausa del dia (breakTime)
- Turnos existentes que no estan cancelados ni ausentes
- Zona horaria del nutricionista
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import pytz
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from nutri.config import get_settings
from nutri.errors import BackingStoreError, InputError, NotFoundError, ValidationError
from nutri.models import INACTIVE_STATUSES, Appointment, Nutritionist
from nutri.schema import Availability, TimeRange
from nutri.scheduling.day_bounds import appointment_fields, is_active_status

logger = logging.getLogger("slots")

Interval = Dict[str, datetime]


def parse_availability(raw: Union[Availability, Mapping[str, Any]]) -> Availability:
    """Valida una plantilla cruda (dict JSON) y devuelve el modelo."""
    if isinstance(raw, Availability):
        return raw
    try:
        return Availability.model_validate(raw)
    except PydanticValidationError as exc:
        raise ValidationError(f"plantilla de disponibilidad invalida: {exc}") from exc


def resolve_timezone(tz: Union[str, pytz.tzinfo.BaseTzInfo, None]) -> pytz.tzinfo.BaseTzInfo:
    if tz is None:
        tz = get_settings().DEFAULT_TIMEZONE
    if not isinstance(tz, str):
        return tz
    try:
        return pytz.timezone(tz)
    except pytz.UnknownTimeZoneError:
        logger.warning("Timezone invalida '%s', usando UTC", tz)
        return pytz.UTC


def _localize(target_date: date, hhmm: time, tz: pytz.tzinfo.BaseTzInfo) -> datetime:
    return tz.localize(datetime.combine(target_date, hhmm))


def _to_interval(rng: TimeRange, target_date: date, tz: pytz.tzinfo.BaseTzInfo) -> Interval:
    return {
        "start": _localize(target_date, rng.start_time, tz),
        "end": _localize(target_date, rng.end_time, tz),
    }


def _merge_intervals(intervals: List[Interval]) -> List[Interval]:
    """Une intervalos adyacentes o solapados."""
    if not intervals:
        return []

    intervals = sorted(intervals, key=lambda x: x["start"])
    merged = [dict(intervals[0])]

    for current in intervals[1:]:
        last_merged = merged[-1]
        if current["start"] <= last_merged["end"]:
            if current["end"] > last_merged["end"]:
                last_merged["end"] = current["end"]
        else:
            merged.append(dict(current))

    return merged


def _overlaps(a: Interval, b: Interval) -> bool:
    # intervalos semiabiertos [start, end)
    return a["start"] < b["end"] and b["start"] < a["end"]


def _partition(interval: Interval, increment: timedelta) -> List[Interval]:
    """Corta el intervalo en bloques de `increment`; el resto final se descarta."""
    out = []
    current = interval["start"]
    while current + increment <= interval["end"]:
        out.append({"start": current, "end": current + increment})
        current += increment
    return out


def _booked_intervals(appointments: Iterable[Any]) -> List[Interval]:
    booked = []
    for appt in appointments:
        dt, duration, status = appointment_fields(appt)
        if not is_active_status(status):
            continue
        if dt.tzinfo is None:
            raise InputError(f"turno sin zona horaria: {dt.isoformat()}")
        if duration is None:
            duration = get_settings().DEFAULT_APPOINTMENT_DURATION
        booked.append({"start": dt, "end": dt + timedelta(minutes=duration)})
    return booked


def compute_slots(
    availability: Union[Availability, Mapping[str, Any]],
    target_date: date,
    appointments: Iterable[Any] = (),
    increment_minutes: Optional[int] = None,
    tz: Union[str, pytz.tzinfo.BaseTzInfo, None] = None,
) -> List[Interval]:
    """
    Horarios reservables para `target_date`.

    Algoritmo:
        1. DayAvailability del dia de la semana; si no esta disponible, []
        2. Rangos del dia -> datetime en la zona del nutricionista, merge
        3. Cortar cada rango en bloques de `increment_minutes`
        4. Descartar bloques que tocan la pausa
        5. Descartar bloques que tocan un turno activo
        6. Orden cronologico

    Un bloque que se solapa aunque sea parcialmente se descarta entero.
    """
    if increment_minutes is None:
        increment_minutes = get_settings().SLOT_INCREMENT_MINUTES
    if increment_minutes <= 0:
        raise InputError(f"increment_minutes debe ser positivo: {increment_minutes}")
    increment = timedelta(minutes=increment_minutes)

    template = parse_availability(availability)
    day = template.for_weekday(target_date.weekday())
    if not day.is_available or not day.slots:
        return []

    zone = resolve_timezone(tz)
    ranges = _merge_intervals([_to_interval(r, target_date, zone) for r in day.slots])

    blocked = _booked_intervals(appointments)
    if day.break_time:
        blocked.append(_to_interval(day.break_time, target_date, zone))

    slots = []
    for rng in ranges:
        for candidate in _partition(rng, increment):
            if any(_overlaps(candidate, b) for b in blocked):
                continue
            slots.append(candidate)

    slots.sort(key=lambda x: x["start"])
    return slots


# ---------------------------------------------------------------------------
# Con base de datos
# ---------------------------------------------------------------------------
async def _load_nutritionist(session: AsyncSession, nutritionist_id: int) -> Nutritionist:
    try:
        nutri = await session.get(Nutritionist, nutritionist_id)
    except (DBAPIError, OSError) as exc:
        raise BackingStoreError(f"no se pudo leer nutricionista: {exc}") from exc
    if nutri is None:
        raise NotFoundError(f"nutricionista {nutritionist_id} no encontrado")
    return nutri


async def _appointments_between(
    session: AsyncSession, nutritionist_id: int, start: datetime, end: datetime
) -> List[Appointment]:
    # un turno que empieza el dia anterior puede invadir este
    lookback = start - timedelta(days=1)
    try:
        res = await session.execute(
            select(Appointment)
            .where(
                Appointment.nutritionist_id == nutritionist_id,
                Appointment.date_time >= lookback,
                Appointment.date_time < end,
                Appointment.status.not_in(INACTIVE_STATUSES),
            )
            .order_by(Appointment.date_time)
        )
    except (DBAPIError, OSError) as exc:
        raise BackingStoreError(f"no se pudo leer turnos: {exc}") from exc
    return list(res.scalars())


def _local_day_window(target_date: date, zone: pytz.tzinfo.BaseTzInfo) -> Interval:
    if target_date in (date.min, date.max):
        raise InputError("fecha fuera de rango")
    start = zone.localize(datetime.combine(target_date, time.min))
    end = zone.localize(datetime.combine(target_date + timedelta(days=1), time.min))
    return {"start": start, "end": end}


async def get_available_slots(
    session: AsyncSession,
    nutritionist_id: int,
    target_date: date,
    increment_minutes: Optional[int] = None,
) -> List[Interval]:
    nutri = await _load_nutritionist(session, nutritionist_id)
    if not nutri.is_active:
        return []
    if not nutri.availability:
        logger.info("Nutricionista %s sin plantilla de disponibilidad", nutritionist_id)
        return []

    zone = resolve_timezone(nutri.timezone)
    window = _local_day_window(target_date, zone)
    appointments = await _appointments_between(session, nutritionist_id, window["start"], window["end"])

    slots = compute_slots(nutri.availability, target_date, appointments, increment_minutes, zone)
    logger.debug("Nutricionista %s, %s: %s horarios libres", nutritionist_id, target_date, len(slots))
    return slots


async def get_slots_for_range(
    session: AsyncSession,
    nutritionist_id: int,
    start_date: date,
    end_date: date,
    increment_minutes: Optional[int] = None,
) -> Dict[str, List[Interval]]:
    """
    {"2025-03-10": [slots], ...} solo para dias con al menos un horario.
    """
    if end_date < start_date:
        raise InputError("end_date es anterior a start_date")
    max_days = get_settings().MAX_SLOT_RANGE_DAYS
    if (end_date - start_date).days + 1 > max_days:
        raise InputError(f"el rango no puede superar {max_days} dias")

    result = {}
    current = start_date
    while current <= end_date:
        slots = await get_available_slots(session, nutritionist_id, current, increment_minutes)
        if slots:
            result[current.isoformat()] = slots
        current += timedelta(days=1)
    return result
