# tests/test_availability.py
from datetime import date, datetime, timedelta, timezone

import pytest

from nutri.errors import InputError, NotFoundError, ValidationError
from nutri.models import Appointment, AppointmentStatus, Nutritionist, Patient
from nutri.scheduling.availability import (
    compute_slots,
    get_available_slots,
    get_slots_for_range,
    parse_availability,
)

UTC = timezone.utc
MONDAY = date(2025, 3, 10)
TUESDAY = date(2025, 3, 11)


def at(hour: int, minute: int = 0, day: date = MONDAY) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=UTC)


def template(slots, break_time=None, day="monday"):
    d = {"isAvailable": True, "slots": [{"start": s, "end": e} for s, e in slots]}
    if break_time:
        d["breakTime"] = {"start": break_time[0], "end": break_time[1]}
    return {day: d}


def hours(slots):
    return [(s["start"].hour, s["end"].hour) for s in slots]


# ---------------------------------------------------------------------------
# compute_slots
# ---------------------------------------------------------------------------
def test_turno_confirmado_bloquea_su_hora():
    appts = [{"date_time": at(10), "duration": 60, "status": "CONFIRMED"}]
    slots = compute_slots(template([("09:00", "12:00")]), MONDAY, appts, 60, "UTC")
    assert hours(slots) == [(9, 10), (11, 12)]


def test_solapamiento_parcial_descarta_el_bloque_entero():
    appts = [{"date_time": at(10, 30), "duration": 30, "status": "SCHEDULED"}]
    slots = compute_slots(template([("09:00", "12:00")]), MONDAY, appts, 60, "UTC")
    assert hours(slots) == [(9, 10), (11, 12)]


def test_turnos_cancelados_y_ausentes_no_bloquean():
    appts = [
        {"date_time": at(9), "duration": 60, "status": AppointmentStatus.CANCELLED},
        {"dateTime": at(10), "duration": 60, "status": "NO_SHOW"},
    ]
    slots = compute_slots(template([("09:00", "12:00")]), MONDAY, appts, 60, "UTC")
    assert hours(slots) == [(9, 10), (10, 11), (11, 12)]


def test_turno_del_dia_anterior_que_invade():
    appts = [{"date_time": at(23, day=date(2025, 3, 9)), "duration": 11 * 60, "status": "CONFIRMED"}]
    slots = compute_slots(template([("09:00", "12:00")]), MONDAY, appts, 60, "UTC")
    assert hours(slots) == [(10, 11), (11, 12)]


def test_pausa():
    slots = compute_slots(template([("09:00", "15:00")], ("12:00", "13:00")), MONDAY, [], 60, "UTC")
    assert hours(slots) == [(9, 10), (10, 11), (11, 12), (13, 14), (14, 15)]


def test_pausa_que_corta_un_bloque():
    slots = compute_slots(template([("09:00", "12:00")], ("10:30", "10:45")), MONDAY, [], 60, "UTC")
    assert hours(slots) == [(9, 10), (11, 12)]


def test_dia_no_disponible():
    t = template([("09:00", "12:00")])
    t["monday"]["isAvailable"] = False
    assert compute_slots(t, MONDAY, [], 60, "UTC") == []
    # martes no esta en la plantilla
    assert compute_slots(t, TUESDAY, [], 60, "UTC") == []


def test_disponible_sin_rangos():
    assert compute_slots({"monday": {"isAvailable": True, "slots": []}}, MONDAY, [], 60, "UTC") == []


def test_incremento_de_media_hora():
    slots = compute_slots(template([("09:00", "11:00")]), MONDAY, [], 30, "UTC")
    assert [s["start"] for s in slots] == [at(9), at(9, 30), at(10), at(10, 30)]
    assert all(s["end"] - s["start"] == timedelta(minutes=30) for s in slots)


def test_resto_final_se_descarta():
    slots = compute_slots(template([("09:00", "10:45")]), MONDAY, [], 60, "UTC")
    assert hours(slots) == [(9, 10)]


def test_rangos_solapados_se_unen():
    slots = compute_slots(template([("10:00", "12:00"), ("09:00", "11:00")]), MONDAY, [], 60, "UTC")
    assert hours(slots) == [(9, 10), (10, 11), (11, 12)]


def test_rangos_separados_en_orden():
    slots = compute_slots(template([("14:00", "16:00"), ("09:00", "10:00")]), MONDAY, [], 60, "UTC")
    assert hours(slots) == [(9, 10), (14, 15), (15, 16)]


def test_invariantes_de_los_slots():
    appts = [
        {"date_time": at(10), "duration": 45, "status": "CONFIRMED"},
        {"date_time": at(14, 15), "duration": 30, "status": "IN_PROGRESS"},
    ]
    brk = (at(12), at(13))
    slots = compute_slots(template([("08:00", "18:00")], ("12:00", "13:00")), MONDAY, appts, 30, "UTC")

    assert slots == sorted(slots, key=lambda s: s["start"])
    for s in slots:
        assert s["end"] - s["start"] == timedelta(minutes=30)
        assert at(8) <= s["start"] and s["end"] <= at(18)
        assert not (s["start"] < brk[1] and brk[0] < s["end"])
        for a in appts:
            a_end = a["date_time"] + timedelta(minutes=a["duration"])
            assert not (s["start"] < a_end and a["date_time"] < s["end"])


def test_zona_horaria_del_nutricionista():
    # Sao Paulo es UTC-3 todo el año
    slots = compute_slots(template([("09:00", "10:00")]), MONDAY, [], 60, "America/Sao_Paulo")
    assert len(slots) == 1
    assert slots[0]["start"] == at(12)


def test_turno_en_utc_contra_agenda_local():
    appts = [{"date_time": at(13), "duration": 60, "status": "CONFIRMED"}]
    slots = compute_slots(template([("09:00", "12:00")]), MONDAY, appts, 60, "America/Sao_Paulo")
    assert [s["start"] for s in slots] == [at(12), at(14)]


def test_zona_horaria_invalida_usa_utc():
    slots = compute_slots(template([("09:00", "10:00")]), MONDAY, [], 60, "Mars/Olympus")
    assert slots[0]["start"] == at(9)


def test_turno_sin_zona_horaria():
    appts = [{"date_time": datetime(2025, 3, 10, 10), "duration": 60, "status": "CONFIRMED"}]
    with pytest.raises(InputError):
        compute_slots(template([("09:00", "12:00")]), MONDAY, appts, 60, "UTC")


@pytest.mark.parametrize("increment", [0, -15])
def test_incremento_invalido(increment):
    with pytest.raises(InputError):
        compute_slots(template([("09:00", "12:00")]), MONDAY, [], increment, "UTC")


def test_plantilla_invalida():
    with pytest.raises(ValidationError):
        parse_availability(template([("12:00", "09:00")]))
    with pytest.raises(ValidationError):
        parse_availability(template([("9:00", "10:00")]))
    with pytest.raises(ValidationError):
        parse_availability({"funday": {"isAvailable": True}})


# ---------------------------------------------------------------------------
# Con base de datos
# ---------------------------------------------------------------------------
async def _setup(session, tz="UTC", availability=None):
    nutri = Nutritionist(
        name="Dra. Slots",
        email="slots@test.com",
        timezone=tz,
        availability=availability if availability is not None else template([("09:00", "12:00")]),
    )
    session.add(nutri)
    await session.flush()
    patient = Patient(nutritionist_id=nutri.id, name="Paciente", email="pac@test.com", protocol_number=None)
    session.add(patient)
    await session.commit()
    return nutri, patient


@pytest.mark.asyncio
async def test_get_available_slots_con_turnos(session):
    nutri, patient = await _setup(session)
    session.add_all([
        Appointment(patient_id=patient.id, nutritionist_id=nutri.id, date_time=at(10), duration=60,
                    status=AppointmentStatus.CONFIRMED),
        Appointment(patient_id=patient.id, nutritionist_id=nutri.id, date_time=at(11), duration=60,
                    status=AppointmentStatus.CANCELLED),
    ])
    await session.commit()

    slots = await get_available_slots(session, nutri.id, MONDAY, 60)
    assert hours(slots) == [(9, 10), (11, 12)]


@pytest.mark.asyncio
async def test_get_available_slots_incremento_por_defecto(session):
    nutri, _ = await _setup(session)
    assert len(await get_available_slots(session, nutri.id, MONDAY)) == 3


@pytest.mark.asyncio
async def test_nutricionista_inexistente(session):
    with pytest.raises(NotFoundError):
        await get_available_slots(session, 999, MONDAY)


@pytest.mark.asyncio
async def test_nutricionista_inactivo_o_sin_plantilla(session):
    nutri, _ = await _setup(session, availability={})
    assert await get_available_slots(session, nutri.id, MONDAY) == []

    nutri.availability = template([("09:00", "12:00")])
    nutri.is_active = False
    await session.commit()
    assert await get_available_slots(session, nutri.id, MONDAY) == []


@pytest.mark.asyncio
async def test_rango_solo_dias_con_horarios(session):
    nutri, _ = await _setup(session)
    result = await get_slots_for_range(session, nutri.id, date(2025, 3, 9), date(2025, 3, 18))
    assert list(result) == ["2025-03-10", "2025-03-17"]
    assert hours(result["2025-03-17"]) == [(9, 10), (10, 11), (11, 12)]


@pytest.mark.asyncio
async def test_rango_invertido_o_demasiado_largo(session):
    nutri, _ = await _setup(session)
    with pytest.raises(InputError):
        await get_slots_for_range(session, nutri.id, TUESDAY, MONDAY)
    with pytest.raises(InputError):
        await get_slots_for_range(session, nutri.id, MONDAY, MONDAY + timedelta(days=40))


def test_estado_desconocido():
    appts = [{"date_time": at(10), "duration": 60, "status": "confirmed"}]
    with pytest.raises(ValidationError):
        compute_slots(template([("09:00", "12:00")]), MONDAY, appts, 60, "UTC")


def test_turno_sin_duracion_usa_la_de_la_config():
    appts = [{"dateTime": at(10), "status": "CONFIRMED"}]
    slots = compute_slots(template([("09:00", "12:00")]), MONDAY, appts, 60, "UTC")
    assert hours(slots) == [(9, 10), (11, 12)]
