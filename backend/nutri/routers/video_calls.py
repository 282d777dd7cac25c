# nutri/routers/video_calls.py
from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from nutri import video_calls
from nutri.db import get_session
from nutri.errors import NotFoundError
from nutri.models import VideoCall, VideoCallStatus
from nutri.schema import VideoCallIn, VideoCallOut

router = APIRouter(prefix="/video-calls", tags=["video-calls"])


def _out(call: VideoCall, display_name: Optional[str] = None) -> VideoCallOut:
    out = VideoCallOut.model_validate(call)
    if call.status != VideoCallStatus.ENDED:
        out.join_url = video_calls.get_provider().join_url(call.room_name, display_name)
    return out


@router.post("", response_model=VideoCallOut, status_code=201)
async def start_call(data: VideoCallIn, session: AsyncSession = Depends(get_session)):
    call = await video_calls.start_video_call(
        session, data.appointment_id, data.initiated_by, join=data.join
    )
    return _out(call, data.display_name)


@router.post("/{video_call_id}/join", response_model=VideoCallOut)
async def join_call(
    video_call_id: int,
    display_name: Optional[str] = None,
    session: AsyncSession = Depends(get_session),
):
    call = await video_calls.join_video_call(session, video_call_id)
    return _out(call, display_name)


@router.post("/{video_call_id}/end", response_model=VideoCallOut)
async def end_call(video_call_id: int, session: AsyncSession = Depends(get_session)):
    return _out(await video_calls.end_video_call(session, video_call_id))


@router.get("/appointment/{appointment_id}/active", response_model=VideoCallOut)
async def active_call(appointment_id: int, session: AsyncSession = Depends(get_session)):
    call = await video_calls.get_open_call(session, appointment_id)
    if call is None:
        raise NotFoundError(f"el turno {appointment_id} no tiene llamada abierta")
    return _out(call)


@router.get("/appointment/{appointment_id}/history", response_model=List[VideoCallOut])
async def call_history(appointment_id: int, session: AsyncSession = Depends(get_session)):
    return [_out(c) for c in await video_calls.call_history(session, appointment_id)]
