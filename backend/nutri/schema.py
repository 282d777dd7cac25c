from __future__ import annotations

from datetime import datetime, time
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from nutri.models import AppointmentStatus, AppointmentType, PlanType, VideoCallStatus

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

HHMM = r"^([01]\d|2[0-3]):[0-5]\d$"


# ---------------------------------------------------------------------------
# Plantilla de disponibilidad
# ---------------------------------------------------------------------------
class TimeRange(BaseModel):
    start: str = Field(pattern=HHMM, description="HH:mm")
    end: str = Field(pattern=HHMM, description="HH:mm")

    @model_validator(mode="after")
    def _start_before_end(self):
        if self.start >= self.end:
            raise ValueError(f"start ({self.start}) debe ser anterior a end ({self.end})")
        return self

    @property
    def start_time(self) -> time:
        return time.fromisoformat(self.start)

    @property
    def end_time(self) -> time:
        return time.fromisoformat(self.end)


class DayAvailability(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_available: bool = Field(False, alias="isAvailable")
    slots: List[TimeRange] = Field(default_factory=list)
    break_time: Optional[TimeRange] = Field(None, alias="breakTime")


class Availability(BaseModel):
    model_config = ConfigDict(extra="forbid")

    monday: DayAvailability = Field(default_factory=DayAvailability)
    tuesday: DayAvailability = Field(default_factory=DayAvailability)
    wednesday: DayAvailability = Field(default_factory=DayAvailability)
    thursday: DayAvailability = Field(default_factory=DayAvailability)
    friday: DayAvailability = Field(default_factory=DayAvailability)
    saturday: DayAvailability = Field(default_factory=DayAvailability)
    sunday: DayAvailability = Field(default_factory=DayAvailability)

    def for_weekday(self, weekday: int) -> DayAvailability:
        """weekday con la convencion de date.weekday() (0 = lunes)."""
        return getattr(self, WEEKDAYS[weekday])


# ---------------------------------------------------------------------------
# Features habilitadas: registro fijo, claves desconocidas se rechazan
# ---------------------------------------------------------------------------
class EnabledFeatures(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ONLINE_CONSULTATIONS: bool = False
    DAILY_MEAL_PLAN: bool = False
    EXERCISE_LIBRARY: bool = False
    DIRECT_CHAT: bool = False
    PROGRESS_TRACKING: bool = False
    RECIPES: bool = False
    SHOPPING_LIST: bool = False
    WATER_REMINDER: bool = False
    MEAL_PHOTOS: bool = False

    @classmethod
    def for_plan(cls, plan_type: PlanType) -> "EnabledFeatures":
        if plan_type == PlanType.PREMIUM:
            return cls(**{k: True for k in cls.model_fields})
        return cls()


# ---------------------------------------------------------------------------
# Entrada / salida de la API
# ---------------------------------------------------------------------------
class NutritionistIn(BaseModel):
    name: str
    email: str
    crn: Optional[str] = None
    specialization: Optional[str] = None
    timezone: Optional[str] = None
    availability: Optional[Availability] = None


class NutritionistOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str
    crn: Optional[str] = None
    specialization: Optional[str] = None
    timezone: str
    availability: Optional[Dict] = None
    is_active: bool


class PatientIn(BaseModel):
    nutritionist_id: int
    name: str
    email: str
    plan_type: PlanType = PlanType.FREE
    enabled_features: Optional[EnabledFeatures] = None


class PatientUpdate(BaseModel):
    # el protocolo no se edita: extra="forbid" lo rechaza con 422
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    email: Optional[str] = None
    plan_type: Optional[PlanType] = None


class PatientOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    nutritionist_id: int
    name: str
    email: str
    protocol_number: Optional[str] = None
    plan_type: PlanType
    enabled_features: EnabledFeatures
    created_at: datetime


class AppointmentIn(BaseModel):
    patient_id: int
    nutritionist_id: int
    date_time: datetime
    duration: Optional[int] = Field(None, gt=0, le=24 * 60)
    type: AppointmentType = AppointmentType.ONLINE
    notes: Optional[str] = None

    @field_validator("date_time")
    @classmethod
    def _aware(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("date_time debe incluir zona horaria (ej. 2025-03-10T10:00:00Z)")
        return v


class AppointmentUpdate(BaseModel):
    status: Optional[AppointmentStatus] = None
    notes: Optional[str] = None
    video_room_url: Optional[str] = None
    date_time: Optional[datetime] = None
    duration: Optional[int] = Field(None, gt=0, le=24 * 60)

    @field_validator("date_time")
    @classmethod
    def _aware(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            raise ValueError("date_time debe incluir zona horaria")
        return v


class AppointmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    patient_id: int
    nutritionist_id: int
    date_time: datetime
    duration: int
    status: AppointmentStatus
    type: AppointmentType
    notes: Optional[str] = None
    video_room_url: Optional[str] = None
    reminder_sent: bool


class SlotOut(BaseModel):
    start: datetime
    end: datetime


class DashboardOut(BaseModel):
    active_patients_count: int
    today_appointments_count: int
    upcoming_appointments: List[AppointmentOut]
    day_start: datetime
    day_end: datetime


class VideoCallIn(BaseModel):
    appointment_id: int
    initiated_by: Optional[str] = None
    display_name: Optional[str] = None
    # false: la llamada queda WAITING hasta el primer join
    join: bool = True


class VideoCallOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    appointment_id: int
    room_name: str
    initiated_by: Optional[str] = None
    status: VideoCallStatus
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration: Optional[int] = None
    join_url: Optional[str] = None
