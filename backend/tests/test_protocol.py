# tests/test_protocol.py
import re
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from nutri.errors import ConflictError, InputError, SequenceExhaustedError, ValidationError
from nutri.models import Nutritionist, Patient
from nutri.scheduling import protocol
from nutri.scheduling.protocol import (
    assign_protocol_number,
    backfill_protocol_numbers,
    generate_protocol_number,
    next_protocol_number,
    protocol_prefix,
)

JAN = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)
FEB = datetime(2025, 2, 1, 0, 0, tzinfo=timezone.utc)
PROTOCOL_RE = re.compile(r"^NUTRI-\d{6}-\d{4}$")


def test_prefix_tiene_anio_y_mes():
    assert protocol_prefix(JAN) == "NUTRI-202501"
    assert protocol_prefix(datetime(2025, 11, 3, tzinfo=timezone.utc)) == "NUTRI-202511"


def test_prefix_usa_el_mes_utc():
    # 22:00 del 31/01 en UTC-3 ya es 1 de febrero en UTC
    now = datetime(2025, 1, 31, 22, 0, tzinfo=timezone(timedelta(hours=-3)))
    assert protocol_prefix(now) == "NUTRI-202502"
    assert next_protocol_number(None, now) == "NUTRI-202502-0001"
    assert protocol_prefix(now) == protocol_prefix(now.astimezone(timezone.utc))


def test_prefix_sin_zona_horaria():
    with pytest.raises(InputError):
        protocol_prefix(datetime(2025, 1, 31, 22, 0))
    with pytest.raises(InputError):
        next_protocol_number(None, datetime(2025, 1, 31, 22, 0))


def test_prefix_anio_fuera_de_rango():
    with pytest.raises(InputError):
        protocol_prefix(datetime(999, 12, 31, tzinfo=timezone.utc))


def test_primer_numero_del_mes():
    assert next_protocol_number(None, JAN) == "NUTRI-202501-0001"


def test_incrementa_el_ultimo():
    assert next_protocol_number("NUTRI-202501-0042", JAN) == "NUTRI-202501-0043"


def test_ultimo_de_otro_mes_es_invalido():
    with pytest.raises(ValidationError):
        next_protocol_number("NUTRI-202412-0042", JAN)


def test_sufijo_mal_formado():
    with pytest.raises(ValidationError):
        next_protocol_number("NUTRI-202501-42", JAN)


def test_secuencia_agotada():
    assert next_protocol_number("NUTRI-202501-9998", JAN) == "NUTRI-202501-9999"
    with pytest.raises(SequenceExhaustedError):
        next_protocol_number("NUTRI-202501-9999", JAN)


# ---------------------------------------------------------------------------
# Con base de datos
# ---------------------------------------------------------------------------
async def _nutritionist(session) -> Nutritionist:
    nutri = Nutritionist(name="Dra. Test", email="dra@test.com")
    session.add(nutri)
    await session.commit()
    return nutri


def _patient(nutri, n: int) -> Patient:
    return Patient(nutritionist_id=nutri.id, name=f"Paciente {n}", email=f"p{n}@test.com")


@pytest.mark.asyncio
async def test_generate_sin_pacientes(session):
    assert await generate_protocol_number(session, JAN) == "NUTRI-202501-0001"


@pytest.mark.asyncio
async def test_assign_secuencial(session):
    nutri = await _nutritionist(session)
    numbers = []
    for n in range(3):
        numbers.append(await assign_protocol_number(session, _patient(nutri, n), JAN))

    assert numbers == ["NUTRI-202501-0001", "NUTRI-202501-0002", "NUTRI-202501-0003"]
    assert all(PROTOCOL_RE.match(num) for num in numbers)


@pytest.mark.asyncio
async def test_reinicia_cada_mes(session):
    nutri = await _nutritionist(session)
    await assign_protocol_number(session, _patient(nutri, 1), JAN)
    await assign_protocol_number(session, _patient(nutri, 2), JAN)

    assert await assign_protocol_number(session, _patient(nutri, 3), FEB) == "NUTRI-202502-0001"


@pytest.mark.asyncio
async def test_assign_no_pisa_protocolo_existente(session):
    nutri = await _nutritionist(session)
    patient = _patient(nutri, 1)
    first = await assign_protocol_number(session, patient, JAN)

    assert await assign_protocol_number(session, patient, FEB) == first
    assert patient.protocol_number == "NUTRI-202501-0001"


@pytest.mark.asyncio
async def test_reintenta_si_el_numero_ya_esta_tomado(session, monkeypatch):
    nutri = await _nutritionist(session)
    await assign_protocol_number(session, _patient(nutri, 1), JAN)

    real = protocol.generate_protocol_number
    calls = []

    async def stale_then_real(s, now=None):
        calls.append(now)
        # la primera lectura simula un alta concurrente que gano la carrera
        if len(calls) == 1:
            return "NUTRI-202501-0001"
        return await real(s, now)

    monkeypatch.setattr(protocol, "generate_protocol_number", stale_then_real)

    number = await assign_protocol_number(session, _patient(nutri, 2), JAN)
    assert number == "NUTRI-202501-0002"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_conflicto_tras_agotar_intentos(session, monkeypatch):
    nutri = await _nutritionist(session)
    await assign_protocol_number(session, _patient(nutri, 1), JAN)

    async def always_taken(s, now=None):
        return "NUTRI-202501-0001"

    monkeypatch.setattr(protocol, "generate_protocol_number", always_taken)

    with pytest.raises(ConflictError):
        await assign_protocol_number(session, _patient(nutri, 2), JAN, max_attempts=2)


@pytest.mark.asyncio
async def test_backfill(session):
    nutri = await _nutritionist(session)
    session.add_all([_patient(nutri, n) for n in range(4)])
    await session.commit()

    assert await backfill_protocol_numbers(session, JAN) == 4
    assert await backfill_protocol_numbers(session, JAN) == 0

    numbers = (await session.execute(select(Patient.protocol_number).order_by(Patient.id))).scalars().all()
    assert numbers == [f"NUTRI-202501-{n:04d}" for n in range(1, 5)]


@pytest.mark.asyncio
async def test_email_duplicado_no_se_reintenta(session, monkeypatch):
    nutri = await _nutritionist(session)
    await assign_protocol_number(session, _patient(nutri, 1), JAN)

    real = protocol.generate_protocol_number
    calls = []

    async def counting(s, now=None):
        calls.append(now)
        return await real(s, now)

    monkeypatch.setattr(protocol, "generate_protocol_number", counting)

    duplicate = Patient(nutritionist_id=nutri.id, name="Otro", email="p1@test.com")
    with pytest.raises(IntegrityError):
        await assign_protocol_number(session, duplicate, JAN)
    assert len(calls) == 1
