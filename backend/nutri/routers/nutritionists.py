# nutri/routers/nutritionists.py
from datetime import date, datetime, timezone
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from nutri.db import get_session
from nutri.config import get_settings
from nutri.errors import NotFoundError
from nutri.models import Appointment, AppointmentStatus, INACTIVE_STATUSES, Nutritionist, Patient
from nutri.schema import AppointmentOut, Availability, DashboardOut, NutritionistIn, NutritionistOut, SlotOut
from nutri.scheduling.availability import get_available_slots, get_slots_for_range
from nutri.scheduling.day_bounds import count_today_appointments, day_bounds
import logging

logger = logging.getLogger("nutritionists")
router = APIRouter(prefix="/nutritionists", tags=["nutritionists"])

UPCOMING_LIMIT = 5


async def _get_or_404(session: AsyncSession, nutritionist_id: int) -> Nutritionist:
    nutri = await session.get(Nutritionist, nutritionist_id)
    if nutri is None:
        raise NotFoundError(f"nutricionista {nutritionist_id} no encontrado")
    return nutri


@router.post("", response_model=NutritionistOut, status_code=201)
async def create_nutritionist(data: NutritionistIn, session: AsyncSession = Depends(get_session)):
    existing = await session.execute(select(Nutritionist).where(Nutritionist.email == data.email))
    if existing.scalar_one_or_none():
        raise HTTPException(400, "Ya existe un nutricionista con ese email")

    nutri = Nutritionist(
        name=data.name,
        email=data.email,
        crn=data.crn,
        specialization=data.specialization,
        timezone=data.timezone or get_settings().DEFAULT_TIMEZONE,
        availability=data.availability.model_dump(by_alias=True) if data.availability else None,
    )
    session.add(nutri)
    await session.commit()
    await session.refresh(nutri)
    logger.info("Nutricionista creado: %s (%s)", nutri.id, nutri.email)
    return nutri


@router.get("/{nutritionist_id}", response_model=NutritionistOut)
async def get_nutritionist(nutritionist_id: int, session: AsyncSession = Depends(get_session)):
    return await _get_or_404(session, nutritionist_id)


@router.put("/{nutritionist_id}/availability", response_model=NutritionistOut)
async def set_availability(
    nutritionist_id: int,
    availability: Availability,
    session: AsyncSession = Depends(get_session),
):
    nutri = await _get_or_404(session, nutritionist_id)
    nutri.availability = availability.model_dump(by_alias=True)
    await session.commit()
    await session.refresh(nutri)
    return nutri


@router.get("/{nutritionist_id}/slots")
async def list_slots(
    nutritionist_id: int,
    day: Optional[date] = Query(None, alias="date"),
    start: Optional[date] = None,
    end: Optional[date] = None,
    increment: Optional[int] = Query(None, gt=0),
    session: AsyncSession = Depends(get_session),
) -> Dict[str, List[SlotOut]]:
    """
    ?date=YYYY-MM-DD para un dia, o ?start=...&end=... para un rango.
    La respuesta siempre es {"YYYY-MM-DD": [{"start", "end"}, ...]}.
    """
    if day is not None:
        slots = await get_available_slots(session, nutritionist_id, day, increment)
        return {day.isoformat(): slots}
    if start is None or end is None:
        raise HTTPException(400, "Indicar 'date' o bien 'start' y 'end'")
    return await get_slots_for_range(session, nutritionist_id, start, end, increment)


@router.get("/{nutritionist_id}/dashboard", response_model=DashboardOut)
async def dashboard(nutritionist_id: int, session: AsyncSession = Depends(get_session)):
    await _get_or_404(session, nutritionist_id)
    now = datetime.now(timezone.utc)

    # pacientes propios o con algun turno con este nutricionista
    active_patients = await session.scalar(
        select(func.count(func.distinct(Patient.id)))
        .select_from(Patient)
        .outerjoin(Appointment, Appointment.patient_id == Patient.id)
        .where(or_(
            Patient.nutritionist_id == nutritionist_id,
            Appointment.nutritionist_id == nutritionist_id,
        ))
    ) or 0

    upcoming = await session.execute(
        select(Appointment)
        .where(
            Appointment.nutritionist_id == nutritionist_id,
            Appointment.date_time >= now,
            Appointment.status.not_in(INACTIVE_STATUSES + (AppointmentStatus.COMPLETED,)),
        )
        .order_by(Appointment.date_time)
        .limit(UPCOMING_LIMIT)
    )

    start, end = day_bounds(now)
    return DashboardOut(
        active_patients_count=active_patients,
        today_appointments_count=await count_today_appointments(session, nutritionist_id, now),
        upcoming_appointments=[AppointmentOut.model_validate(a) for a in upcoming.scalars()],
        day_start=start,
        day_end=end,
    )
