# nutri/main.py
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from nutri.config import get_settings
from nutri.db import engine, init_db
from nutri.errors import NutriError
from nutri.routers import appointments, nutritionists, patients, video_calls
import logging

settings = get_settings()
logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger("nutri")


# ---------------------------------------------------------------------------
# Lifespan → creamos tablas
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    logger.info("Base lista (%s, env=%s)", engine.dialect.name, settings.ENV)
    yield


app = FastAPI(title="Nutri Agenda API", lifespan=lifespan)

app.include_router(nutritionists.router)
app.include_router(patients.router)
app.include_router(appointments.router)
app.include_router(video_calls.router)


@app.exception_handler(NutriError)
async def nutri_error_handler(request: Request, exc: NutriError):
    if exc.status_code >= 500:
        logger.error("%s %s -> %s: %s", request.method, request.url.path, type(exc).__name__, exc)
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


@app.get("/health")
async def health():
    return {"status": "ok", "db": engine.dialect.name}
