"""
Numero de protocolo del paciente.

Formato: PREFIX-YYYYMM-NNNN (ej: NUTRI-202501-0043). La secuencia se
reinicia cada mes calendario y el sufijo tiene ancho fijo de 4 digitos,
por lo que el orden de strings coincide con el orden numerico.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from nutri.config import get_settings
from nutri.errors import BackingStoreError, ConflictError, InputError, SequenceExhaustedError, ValidationError
from nutri.models import Patient

logger = logging.getLogger("protocol")

SUFFIX_WIDTH = 4
MAX_SEQUENCE = 10 ** SUFFIX_WIDTH - 1


def protocol_prefix(now: datetime, prefix: Optional[str] = None) -> str:
    """'NUTRI-' + año + mes con dos digitos, del mes UTC de `now`."""
    if now.tzinfo is None or now.utcoffset() is None:
        raise InputError(f"datetime sin zona horaria: {now.isoformat()}")
    now = now.astimezone(timezone.utc)
    if not 1000 <= now.year <= 9999:
        raise InputError(f"año fuera de rango para el protocolo: {now.year}")
    prefix = prefix or get_settings().PROTOCOL_PREFIX
    return f"{prefix}-{now.year:04d}{now.month:02d}"


def next_protocol_number(last: Optional[str], now: datetime, prefix: Optional[str] = None) -> str:
    """
    Siguiente protocolo del mes de `now`.

    `last` es el mayor protocolo existente con el prefijo del mes (o None).
    """
    month_prefix = protocol_prefix(now, prefix)

    next_number = 1
    if last:
        m = re.fullmatch(rf"{re.escape(month_prefix)}-(\d{{{SUFFIX_WIDTH}}})", last)
        if not m:
            raise ValidationError(f"protocolo '{last}' no pertenece a {month_prefix}")
        next_number = int(m.group(1)) + 1

    if next_number > MAX_SEQUENCE:
        raise SequenceExhaustedError(
            f"{month_prefix} ya uso los {MAX_SEQUENCE} numeros disponibles"
        )

    return f"{month_prefix}-{next_number:0{SUFFIX_WIDTH}d}"


async def last_protocol_number(session: AsyncSession, month_prefix: str) -> Optional[str]:
    try:
        return await session.scalar(
            select(func.max(Patient.protocol_number))
            .where(Patient.protocol_number.startswith(month_prefix + "-"))
        )
    except (DBAPIError, OSError) as exc:
        raise BackingStoreError(f"no se pudo consultar protocolos: {exc}") from exc


async def generate_protocol_number(session: AsyncSession, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    last = await last_protocol_number(session, protocol_prefix(now))
    return next_protocol_number(last, now)


def _is_protocol_collision(exc: IntegrityError) -> bool:
    # sqlite: "UNIQUE constraint failed: patients.protocol_number"
    # postgres: 'violates unique constraint "ix_patients_protocol_number"'
    return "protocol_number" in str(exc.orig)


async def assign_protocol_number(
    session: AsyncSession,
    patient: Patient,
    now: Optional[datetime] = None,
    max_attempts: Optional[int] = None,
) -> str:
    """
    Asigna el protocolo al paciente y hace commit.

    Lectura del maximo, incremento y escritura van en la misma transaccion;
    si un alta concurrente tomo el mismo numero, el unique constraint falla,
    se hace rollback y se reintenta con una lectura nueva.
    Cualquier otra violacion de integridad (ej. email duplicado) se propaga.
    """
    current = await patient.awaitable_attrs.protocol_number
    if current:
        return current

    max_attempts = max_attempts or get_settings().PROTOCOL_MAX_ATTEMPTS
    for attempt in range(1, max_attempts + 1):
        number = await generate_protocol_number(session, now)
        patient.protocol_number = number
        session.add(patient)
        try:
            await session.commit()
        except IntegrityError as exc:
            await session.rollback()
            if not _is_protocol_collision(exc):
                raise
            logger.warning("Protocolo %s en uso (intento %s/%s)", number, attempt, max_attempts)
            continue
        except (DBAPIError, OSError) as exc:
            await session.rollback()
            raise BackingStoreError(f"no se pudo guardar protocolo: {exc}") from exc
        logger.info("Protocolo asignado: %s", number)
        return number

    raise ConflictError(f"no se pudo asignar protocolo tras {max_attempts} intentos")


async def backfill_protocol_numbers(session: AsyncSession, now: Optional[datetime] = None) -> int:
    """Asigna protocolo a los pacientes que no tienen. Devuelve cuantos."""
    try:
        res = await session.execute(
            select(Patient)
            .where(Patient.protocol_number.is_(None))
            .order_by(Patient.created_at, Patient.id)
        )
    except (DBAPIError, OSError) as exc:
        raise BackingStoreError(f"no se pudo listar pacientes: {exc}") from exc

    pending = list(res.scalars())
    logger.info("Encontrados %s pacientes sin protocolo", len(pending))

    for patient in pending:
        await assign_protocol_number(session, patient, now)
    return len(pending)
