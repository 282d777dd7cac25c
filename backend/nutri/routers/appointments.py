# nutri/routers/appointments.py
from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from nutri import appointment_service
from nutri.db import get_session
from nutri.schema import AppointmentIn, AppointmentOut, AppointmentUpdate

router = APIRouter(prefix="/appointments", tags=["appointments"])


@router.get("", response_model=List[AppointmentOut])
async def list_appointments(
    nutritionist_id: Optional[int] = None,
    patient_id: Optional[int] = None,
    session: AsyncSession = Depends(get_session),
):
    return await appointment_service.list_appointments(session, nutritionist_id, patient_id)


@router.get("/{appointment_id}", response_model=AppointmentOut)
async def get_appointment(appointment_id: int, session: AsyncSession = Depends(get_session)):
    return await appointment_service.get_appointment(session, appointment_id)


@router.post("", response_model=AppointmentOut, status_code=201)
async def create_appointment(data: AppointmentIn, session: AsyncSession = Depends(get_session)):
    return await appointment_service.create_appointment(session, data)


@router.patch("/{appointment_id}", response_model=AppointmentOut)
async def update_appointment(
    appointment_id: int,
    data: AppointmentUpdate,
    session: AsyncSession = Depends(get_session),
):
    return await appointment_service.update_appointment(session, appointment_id, data)


@router.delete("/{appointment_id}", response_model=AppointmentOut)
async def cancel_appointment(appointment_id: int, session: AsyncSession = Depends(get_session)):
    # no se borra: queda CANCELLED y libera el horario
    return await appointment_service.cancel_appointment(session, appointment_id)
