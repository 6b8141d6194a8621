from typing import List

from fastapi import APIRouter, Depends

from app.dependencies import current_user_id, get_engine, get_messaging, get_session_factory
from app.services.messaging import MessagingService
from app.services.metering import MeteringEngine
from app.services.reviews import create_review
from schemas.chat import MarkReadResponse, MessageCreate, MessageResponse
from schemas.session import ReviewCreate, ReviewResponse, SessionResponse, SessionStartRequest

router = APIRouter()


@router.post("", response_model=SessionResponse)
async def start_session(
    payload: SessionStartRequest,
    user_id: str = Depends(current_user_id),
    engine: MeteringEngine = Depends(get_engine),
):
    return await engine.start_session(user_id, payload.reader_id, payload.type, payload.rate_per_minute)


@router.get("/client", response_model=List[SessionResponse])
async def client_sessions(user_id: str = Depends(current_user_id), engine: MeteringEngine = Depends(get_engine)):
    return await engine.list_client_sessions(user_id)


@router.get("/reader", response_model=List[SessionResponse])
async def reader_sessions(user_id: str = Depends(current_user_id), engine: MeteringEngine = Depends(get_engine)):
    return await engine.list_reader_sessions(user_id)


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: str,
    user_id: str = Depends(current_user_id),
    engine: MeteringEngine = Depends(get_engine),
):
    return await engine.get_session(session_id, user_id)


@router.patch("/{session_id}/end", response_model=SessionResponse)
async def end_session(
    session_id: str,
    user_id: str = Depends(current_user_id),
    engine: MeteringEngine = Depends(get_engine),
):
    return await engine.end_session(session_id, actor_id=user_id, reason="user")


@router.get("/{session_id}/messages", response_model=List[MessageResponse])
async def session_messages(
    session_id: str,
    user_id: str = Depends(current_user_id),
    messaging: MessagingService = Depends(get_messaging),
):
    return await messaging.get_session_messages(session_id, user_id)


@router.post("/{session_id}/messages", response_model=MessageResponse)
async def send_message(
    session_id: str,
    payload: MessageCreate,
    user_id: str = Depends(current_user_id),
    messaging: MessagingService = Depends(get_messaging),
):
    return await messaging.send_message(session_id, user_id, payload.content)


@router.post("/{session_id}/messages/read", response_model=MarkReadResponse)
async def mark_messages_read(
    session_id: str,
    user_id: str = Depends(current_user_id),
    messaging: MessagingService = Depends(get_messaging),
):
    updated = await messaging.mark_read(session_id, user_id)
    return MarkReadResponse(success=True, updated=updated)


@router.post("/{session_id}/review", response_model=ReviewResponse)
async def review_session(
    session_id: str,
    payload: ReviewCreate,
    user_id: str = Depends(current_user_id),
    session_factory=Depends(get_session_factory),
):
    return await create_review(session_factory, session_id, user_id, payload.rating, payload.comment)
