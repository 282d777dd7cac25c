# nutri/routers/patients.py
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from nutri import appointment_service
from nutri.db import get_session
from nutri.errors import NotFoundError
from nutri.models import Appointment, Nutritionist, Patient, VideoCall
from nutri.schema import AppointmentOut, EnabledFeatures, PatientIn, PatientOut, PatientUpdate
from nutri.scheduling.protocol import assign_protocol_number
import logging

logger = logging.getLogger("patients")
router = APIRouter(prefix="/patients", tags=["patients"])

DUPLICATE_EMAIL = "Ya existe un paciente con ese email"


async def _get_or_404(session: AsyncSession, patient_id: int) -> Patient:
    patient = await session.get(Patient, patient_id)
    if patient is None:
        raise NotFoundError(f"paciente {patient_id} no encontrado")
    return patient


async def _email_taken(session: AsyncSession, email: str, exclude_id: Optional[int] = None) -> bool:
    stmt = select(Patient.id).where(Patient.email == email)
    if exclude_id is not None:
        stmt = stmt.where(Patient.id != exclude_id)
    return (await session.execute(stmt)).first() is not None


@router.get("", response_model=List[PatientOut])
async def list_patients(nutritionist_id: Optional[int] = None, session: AsyncSession = Depends(get_session)):
    stmt = select(Patient).order_by(Patient.name, Patient.id)
    if nutritionist_id is not None:
        stmt = stmt.where(Patient.nutritionist_id == nutritionist_id)
    return list((await session.execute(stmt)).scalars())


@router.post("", response_model=PatientOut, status_code=201)
async def create_patient(data: PatientIn, session: AsyncSession = Depends(get_session)):
    if await session.get(Nutritionist, data.nutritionist_id) is None:
        raise NotFoundError(f"nutricionista {data.nutritionist_id} no encontrado")

    if await _email_taken(session, data.email):
        raise HTTPException(400, DUPLICATE_EMAIL)

    # sin features explicitas se toman las del plan
    features = data.enabled_features or EnabledFeatures.for_plan(data.plan_type)
    patient = Patient(
        nutritionist_id=data.nutritionist_id,
        name=data.name,
        email=data.email,
        plan_type=data.plan_type,
        enabled_features=features.model_dump(),
    )
    # el alta y el protocolo van en el mismo commit
    try:
        await assign_protocol_number(session, patient)
    except IntegrityError:
        # otro alta con el mismo email gano la carrera
        raise HTTPException(400, DUPLICATE_EMAIL)
    await session.refresh(patient)
    logger.info("Paciente creado: %s (%s)", patient.id, patient.protocol_number)
    return patient


@router.get("/protocol/{protocol_number}", response_model=PatientOut)
async def get_patient_by_protocol(protocol_number: str, session: AsyncSession = Depends(get_session)):
    res = await session.execute(select(Patient).where(Patient.protocol_number == protocol_number))
    patient = res.scalar_one_or_none()
    if patient is None:
        raise NotFoundError(f"protocolo {protocol_number} no encontrado")
    return patient


@router.get("/{patient_id}", response_model=PatientOut)
async def get_patient(patient_id: int, session: AsyncSession = Depends(get_session)):
    return await _get_or_404(session, patient_id)


@router.put("/{patient_id}", response_model=PatientOut)
async def update_patient(
    patient_id: int,
    data: PatientUpdate,
    session: AsyncSession = Depends(get_session),
):
    patient = await _get_or_404(session, patient_id)
    changes = data.model_dump(exclude_unset=True, exclude_none=True)
    if "email" in changes and await _email_taken(session, changes["email"], exclude_id=patient.id):
        raise HTTPException(400, DUPLICATE_EMAIL)

    for field, value in changes.items():
        setattr(patient, field, value)
    await session.commit()
    await session.refresh(patient)
    logger.info("Paciente actualizado: %s %s", patient.id, sorted(changes))
    return patient


@router.delete("/{patient_id}", status_code=204)
async def delete_patient(patient_id: int, session: AsyncSession = Depends(get_session)):
    patient = await _get_or_404(session, patient_id)
    # turnos y llamadas del paciente se van con el
    appointment_ids = select(Appointment.id).where(Appointment.patient_id == patient.id)
    await session.execute(delete(VideoCall).where(VideoCall.appointment_id.in_(appointment_ids)))
    await session.execute(delete(Appointment).where(Appointment.patient_id == patient.id))
    await session.delete(patient)
    await session.commit()
    logger.info("Paciente eliminado: %s (%s)", patient_id, patient.protocol_number)
    return Response(status_code=204)


@router.get("/{patient_id}/appointments", response_model=List[AppointmentOut])
async def patient_appointments(patient_id: int, session: AsyncSession = Depends(get_session)):
    await _get_or_404(session, patient_id)
    return await appointment_service.list_appointments(session, patient_id=patient_id)


@router.get("/{patient_id}/features", response_model=EnabledFeatures)
async def get_features(patient_id: int, session: AsyncSession = Depends(get_session)):
    patient = await _get_or_404(session, patient_id)
    return EnabledFeatures.model_validate(patient.enabled_features or {})


@router.put("/{patient_id}/features", response_model=EnabledFeatures)
async def set_features(
    patient_id: int,
    features: EnabledFeatures,
    session: AsyncSession = Depends(get_session),
):
    patient = await _get_or_404(session, patient_id)
    patient.enabled_features = features.model_dump()
    await session.commit()
    logger.info("Features actualizadas: paciente %s", patient.id)
    return features
