"""
Asigna numero de protocolo a los pacientes cargados antes de que existiera.

    python -m nutri.scripts.backfill_protocols
"""
import asyncio
import logging

from nutri.config import get_settings
from nutri.db import SessionLocal, init_db
from nutri.scheduling.protocol import backfill_protocol_numbers

logger = logging.getLogger("backfill")


async def main() -> int:
    await init_db()
    async with SessionLocal() as session:
        total = await backfill_protocol_numbers(session)
    logger.info("Backfill terminado: %s pacientes actualizados", total)
    return total


if __name__ == "__main__":
    logging.basicConfig(level=get_settings().LOG_LEVEL)
    asyncio.run(main())
