# models.py
from __future__ import annotations
from datetime import datetime, timezone
from typing import List, Dict, Any, Optional
import enum

from sqlalchemy import (
    String, Integer, DateTime, Boolean, Enum as SAEnum, JSON,
    ForeignKey, Index, Text, TypeDecorator
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

UTC = timezone.utc

# JSONB en Postgres, JSON plano en sqlite (tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator):
    """Guarda instantes en UTC y los devuelve siempre con tzinfo (sqlite los pierde)."""
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime: se requiere tzinfo")
        return value.astimezone(UTC)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


def utcnow() -> datetime:
    return datetime.now(UTC)


class Base(AsyncAttrs, DeclarativeBase):
    pass

# -------- Enums --------
class AppointmentStatus(enum.Enum):
    SCHEDULED = "SCHEDULED"
    CONFIRMED = "CONFIRMED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"

# estados que no ocupan la agenda
INACTIVE_STATUSES = (AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW)

class AppointmentType(enum.Enum):
    ONLINE = "ONLINE"
    PRESENCIAL = "PRESENCIAL"
    RETORNO = "RETORNO"

class PlanType(enum.Enum):
    FREE = "FREE"
    BASIC = "BASIC"
    PREMIUM = "PREMIUM"
    CUSTOM = "CUSTOM"

class VideoCallStatus(enum.Enum):
    WAITING = "WAITING"
    ACTIVE = "ACTIVE"
    ENDED = "ENDED"

# ---------------------------------------------------------------------------
# Nutritionist – plantilla semanal de disponibilidad en JSON
# ---------------------------------------------------------------------------
class Nutritionist(Base):
    __tablename__ = "nutritionists"

    id:             Mapped[int]            = mapped_column(primary_key=True)
    name:           Mapped[str]            = mapped_column(String(150), nullable=False)
    email:          Mapped[str]            = mapped_column(String(150), unique=True, nullable=False)
    crn:            Mapped[Optional[str]]  = mapped_column(String(40))
    specialization: Mapped[Optional[str]]  = mapped_column(String(150))
    timezone:       Mapped[str]            = mapped_column(String(64), default="UTC", nullable=False)
    availability:   Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType)
    is_active:      Mapped[bool]           = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    patients: Mapped[List["Patient"]] = relationship(back_populates="nutritionist")
    appointments: Mapped[List["Appointment"]] = relationship(back_populates="nutritionist")


class Patient(Base):
    __tablename__ = "patients"
    id: Mapped[int] = mapped_column(primary_key=True)
    nutritionist_id: Mapped[int] = mapped_column(ForeignKey("nutritionists.id"), index=True)
    name: Mapped[str] = mapped_column(String(150), index=True)
    email: Mapped[str] = mapped_column(String(150), unique=True)
    # se asigna una sola vez (alta o backfill)
    protocol_number: Mapped[Optional[str]] = mapped_column(String(20), unique=True, index=True)
    plan_type: Mapped[PlanType] = mapped_column(SAEnum(PlanType), default=PlanType.FREE)
    enabled_features: Mapped[Dict[str, bool]] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    nutritionist: Mapped["Nutritionist"] = relationship(back_populates="patients")
    appointments: Mapped[List["Appointment"]] = relationship(back_populates="patient")


class Appointment(Base):
    __tablename__ = "appointments"
    id: Mapped[int] = mapped_column(primary_key=True)
    patient_id: Mapped[int] = mapped_column(ForeignKey("patients.id"), index=True)
    nutritionist_id: Mapped[int] = mapped_column(ForeignKey("nutritionists.id"), index=True)
    date_time: Mapped[datetime] = mapped_column(UTCDateTime(), index=True)
    duration: Mapped[int] = mapped_column(Integer, default=60)  # minutos
    status: Mapped[AppointmentStatus] = mapped_column(
        SAEnum(AppointmentStatus), default=AppointmentStatus.SCHEDULED
    )
    type: Mapped[AppointmentType] = mapped_column(SAEnum(AppointmentType), default=AppointmentType.ONLINE)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    video_room_url: Mapped[Optional[str]] = mapped_column(String(500))
    reminder_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow)

    patient: Mapped["Patient"] = relationship(back_populates="appointments")
    nutritionist: Mapped["Nutritionist"] = relationship(back_populates="appointments")
    video_calls: Mapped[List["VideoCall"]] = relationship(
        back_populates="appointment", cascade="all, delete-orphan"
    )


class VideoCall(Base):
    __tablename__ = "video_calls"
    id: Mapped[int] = mapped_column(primary_key=True)
    appointment_id: Mapped[int] = mapped_column(ForeignKey("appointments.id", ondelete="CASCADE"), index=True)
    room_name: Mapped[str] = mapped_column(String(120), unique=True)
    initiated_by: Mapped[Optional[str]] = mapped_column(String(150))
    status: Mapped[VideoCallStatus] = mapped_column(SAEnum(VideoCallStatus), default=VideoCallStatus.WAITING)
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    ended_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    duration: Mapped[Optional[int]]  # minutos, redondeado hacia arriba
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    appointment: Mapped["Appointment"] = relationship(back_populates="video_calls")

# Índices adicionales
Index("ix_appointment_nutri_datetime", Appointment.nutritionist_id, Appointment.date_time)
Index("ix_video_call_appt_status", VideoCall.appointment_id, VideoCall.status)
