"""
Video Call Service

Salas Jitsi por turno: nombre de sala unico, URL con la configuracion
del cliente embebido y ciclo WAITING -> ACTIVE -> ENDED.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional
from urllib.parse import quote

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from nutri.appointment_service import get_appointment
from nutri.config import get_settings
from nutri.errors import NotFoundError
from nutri.models import VideoCall, VideoCallStatus

logger = logging.getLogger("videocall")

UTC = timezone.utc

OPEN_STATUSES = (VideoCallStatus.WAITING, VideoCallStatus.ACTIVE)

# parametros que desactivan login, deep links y pantallas intermedias
JITSI_URL_CONFIG: Dict[str, str] = {
    "config.disableDeepLinking": "true",
    "config.requireDisplayName": "false",
    "config.enableUserRolesBasedOnToken": "false",
    "config.enableInsecureRoomNameWarning": "false",
    "interfaceConfig.SHOW_JITSI_WATERMARK": "false",
    "interfaceConfig.SHOW_WATERMARK_FOR_GUESTS": "false",
    "interfaceConfig.AUTHENTICATION_ENABLE": "false",
    "interfaceConfig.DISABLE_JOIN_LEAVE_NOTIFICATIONS": "true",
    "config.prejoinPageEnabled": "false",
    "config.hideConferenceSubject": "true",
    "config.hideConferenceTimer": "false",
    "config.enableWelcomePage": "false",
    "config.enableClosePage": "false",
    "config.disableInviteFunctions": "true",
    "config.startWithAudioMuted": "false",
    "config.startWithVideoMuted": "false",
    "config.remoteVideoMenu.disableKick": "true",
    "config.disableModeratorIndicator": "true",
    "config.resolution": "720",
    "config.constraints.video.height.ideal": "720",
    "config.constraints.video.height.max": "720",
    "config.constraints.video.height.min": "180",
    "config.disableProfile": "true",
    "config.disableRemoteMute": "false",
    "config.enableLobbyChat": "false",
    "config.doNotStoreRoom": "true",
}


class VideoCallProvider(ABC):
    """Interfaz de proveedores de videollamada."""

    @abstractmethod
    def room_name(self, appointment_id: int, now: datetime) -> str:
        pass

    @abstractmethod
    def join_url(self, room_name: str, display_name: Optional[str] = None) -> str:
        pass


class JitsiProvider(VideoCallProvider):
    def __init__(self, server: Optional[str] = None, url_config: Optional[Dict[str, str]] = None):
        self.server = server or get_settings().JITSI_SERVER
        self.url_config = dict(JITSI_URL_CONFIG if url_config is None else url_config)

    def room_name(self, appointment_id: int, now: datetime) -> str:
        return f"nutri-{appointment_id}-{int(now.timestamp() * 1000)}"

    def join_url(self, room_name: str, display_name: Optional[str] = None) -> str:
        params = "&".join(f"{k}={v}" for k, v in self.url_config.items())
        url = f"https://{self.server}/{room_name}"
        if params:
            url += f"?{params}"
        if display_name:
            url += f'#userInfo.displayName="{quote(display_name)}"'
        return url


def get_provider(name: str = "jitsi") -> VideoCallProvider:
    if name == "jitsi":
        return JitsiProvider()
    raise ValueError(f"Unsupported provider: {name}")


def call_duration_minutes(started_at: Optional[datetime], ended_at: datetime) -> int:
    """Minutos redondeados hacia arriba; 0 si nunca empezo."""
    if started_at is None:
        return 0
    return math.ceil((ended_at - started_at).total_seconds() / 60)


async def get_video_call(session: AsyncSession, video_call_id: int) -> VideoCall:
    call = await session.get(VideoCall, video_call_id)
    if call is None:
        raise NotFoundError(f"videollamada {video_call_id} no encontrada")
    return call


async def get_open_call(session: AsyncSession, appointment_id: int) -> Optional[VideoCall]:
    res = await session.execute(
        select(VideoCall)
        .where(VideoCall.appointment_id == appointment_id, VideoCall.status.in_(OPEN_STATUSES))
        .order_by(VideoCall.created_at.desc())
        .limit(1)
    )
    return res.scalar_one_or_none()


async def start_video_call(
    session: AsyncSession,
    appointment_id: int,
    initiated_by: Optional[str] = None,
    provider: Optional[VideoCallProvider] = None,
    now: Optional[datetime] = None,
    join: bool = True,
) -> VideoCall:
    """
    Reutiliza la llamada abierta del turno o crea una nueva.

    Con `join` quien la crea entra en el momento y la llamada nace ACTIVE;
    sin `join` queda WAITING hasta el primer `join_video_call`.
    """
    provider = provider or get_provider()
    appt = await get_appointment(session, appointment_id)

    existing = await get_open_call(session, appointment_id)
    if existing:
        return existing

    now = now or datetime.now(UTC)
    call = VideoCall(
        appointment_id=appt.id,
        room_name=provider.room_name(appt.id, now),
        initiated_by=initiated_by,
        status=VideoCallStatus.ACTIVE if join else VideoCallStatus.WAITING,
        started_at=now if join else None,
    )
    session.add(call)
    appt.video_room_url = provider.join_url(call.room_name)
    await session.commit()
    await session.refresh(call)
    logger.info("Llamada iniciada: %s en la sala %s", call.id, call.room_name)
    return call


async def join_video_call(
    session: AsyncSession, video_call_id: int, now: Optional[datetime] = None
) -> VideoCall:
    call = await get_video_call(session, video_call_id)
    if call.status == VideoCallStatus.WAITING:
        call.status = VideoCallStatus.ACTIVE
        call.started_at = now or datetime.now(UTC)
        await session.commit()
        await session.refresh(call)
    return call


async def end_video_call(
    session: AsyncSession, video_call_id: int, now: Optional[datetime] = None
) -> VideoCall:
    call = await get_video_call(session, video_call_id)
    if call.status == VideoCallStatus.ENDED:
        return call

    ended_at = now or datetime.now(UTC)
    answered = call.started_at is not None
    call.status = VideoCallStatus.ENDED
    call.ended_at = ended_at
    call.duration = call_duration_minutes(call.started_at, ended_at)
    await session.commit()
    await session.refresh(call)
    logger.info("Llamada finalizada: %s, duracion: %s minutos, atendida: %s",
                call.id, call.duration, answered)
    return call


async def call_history(session: AsyncSession, appointment_id: int) -> List[VideoCall]:
    """Todas las llamadas del turno, la mas reciente primero."""
    await get_appointment(session, appointment_id)
    res = await session.execute(
        select(VideoCall)
        .where(VideoCall.appointment_id == appointment_id)
        .order_by(VideoCall.created_at.desc(), VideoCall.id.desc())
    )
    return list(res.scalars())
