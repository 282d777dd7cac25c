# appointment_service.py
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from nutri.config import get_settings
from nutri.errors import BackingStoreError, ConflictError, NotFoundError
from nutri.models import INACTIVE_STATUSES, Appointment, AppointmentStatus, Nutritionist, Patient
from nutri.schema import AppointmentIn, AppointmentUpdate

logger = logging.getLogger("appointments")

# duracion maxima admitida; acota la ventana de busqueda de solapamientos
MAX_DURATION_MINUTES = 24 * 60


async def find_conflicts(
    session: AsyncSession,
    nutritionist_id: int,
    start: datetime,
    duration: int,
    exclude_id: Optional[int] = None,
) -> List[Appointment]:
    """
    Turnos activos del nutricionista que se solapan con [start, start+duration).
    """
    end = start + timedelta(minutes=duration)
    stmt = (
        select(Appointment)
        .where(
            Appointment.nutritionist_id == nutritionist_id,
            Appointment.status.not_in(INACTIVE_STATUSES),
            Appointment.date_time < end,
            Appointment.date_time > start - timedelta(minutes=MAX_DURATION_MINUTES),
        )
        .order_by(Appointment.date_time)
    )
    if exclude_id is not None:
        stmt = stmt.where(Appointment.id != exclude_id)

    try:
        candidates = list((await session.execute(stmt)).scalars())
    except (DBAPIError, OSError) as exc:
        raise BackingStoreError(f"no se pudo leer turnos: {exc}") from exc

    return [
        a for a in candidates
        if a.date_time + timedelta(minutes=a.duration) > start
    ]


async def get_appointment(session: AsyncSession, appointment_id: int) -> Appointment:
    appt = await session.get(Appointment, appointment_id)
    if appt is None:
        raise NotFoundError(f"turno {appointment_id} no encontrado")
    return appt


async def list_appointments(
    session: AsyncSession,
    nutritionist_id: Optional[int] = None,
    patient_id: Optional[int] = None,
) -> List[Appointment]:
    stmt = select(Appointment).order_by(Appointment.date_time.desc())
    if nutritionist_id is not None:
        stmt = stmt.where(Appointment.nutritionist_id == nutritionist_id)
    if patient_id is not None:
        stmt = stmt.where(Appointment.patient_id == patient_id)
    return list((await session.execute(stmt)).scalars())


async def create_appointment(session: AsyncSession, data: AppointmentIn) -> Appointment:
    if await session.get(Nutritionist, data.nutritionist_id) is None:
        raise NotFoundError(f"nutricionista {data.nutritionist_id} no encontrado")
    if await session.get(Patient, data.patient_id) is None:
        raise NotFoundError(f"paciente {data.patient_id} no encontrado")

    duration = data.duration or get_settings().DEFAULT_APPOINTMENT_DURATION
    conflicts = await find_conflicts(session, data.nutritionist_id, data.date_time, duration)
    if conflicts:
        logger.info("Horario ocupado: nutricionista=%s inicio=%s choca con %s",
                    data.nutritionist_id, data.date_time.isoformat(), [c.id for c in conflicts])
        raise ConflictError("Horario no disponible")

    appt = Appointment(
        patient_id=data.patient_id,
        nutritionist_id=data.nutritionist_id,
        date_time=data.date_time,
        duration=duration,
        type=data.type,
        notes=data.notes,
    )
    session.add(appt)
    await session.commit()
    await session.refresh(appt)
    logger.info("Turno creado: %s (nutricionista=%s, paciente=%s, %s)",
                appt.id, appt.nutritionist_id, appt.patient_id, appt.date_time.isoformat())
    return appt


async def update_appointment(
    session: AsyncSession, appointment_id: int, data: AppointmentUpdate
) -> Appointment:
    appt = await get_appointment(session, appointment_id)
    changes = data.model_dump(exclude_unset=True)

    new_start = changes.get("date_time") or appt.date_time
    new_duration = changes.get("duration") or appt.duration
    new_status = changes.get("status") or appt.status

    occupies = new_status not in INACTIVE_STATUSES
    moved = "date_time" in changes or "duration" in changes
    reactivated = appt.status in INACTIVE_STATUSES and occupies
    if occupies and (moved or reactivated):
        conflicts = await find_conflicts(
            session, appt.nutritionist_id, new_start, new_duration, exclude_id=appt.id
        )
        if conflicts:
            raise ConflictError("Horario no disponible")

    for field, value in changes.items():
        if value is not None:
            setattr(appt, field, value)

    await session.commit()
    await session.refresh(appt)
    logger.info("Turno actualizado: %s %s", appt.id, sorted(changes))
    return appt


async def cancel_appointment(session: AsyncSession, appointment_id: int) -> Appointment:
    appt = await get_appointment(session, appointment_id)
    appt.status = AppointmentStatus.CANCELLED
    await session.commit()
    await session.refresh(appt)
    logger.info("Turno cancelado: %s", appt.id)
    return appt
