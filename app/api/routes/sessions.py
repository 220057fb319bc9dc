"""
Session API Routes - lifecycle transitions and metered messages
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_principal, get_fanout, require_student
from app.core.auth import TokenPayload
from app.db.database import get_db
from app.db.models.mentor_session import SessionState
from app.db.models.session_message import MessageKind
from app.domain.payloads import MessagePayload
from app.domain.services.metering_service import MeteringService
from app.domain.services.session_service import SessionService
from app.realtime.fanout import RealtimeFanout

router = APIRouter()


class CreateSessionRequest(BaseModel):
    mentor_id: int
    rate_per_unit: Optional[int] = Field(default=None, gt=0)


class FeedbackRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    feedback: Optional[str] = Field(default=None, max_length=2000)


class SessionResponse(BaseModel):
    id: int
    mentor_id: int
    student_id: int
    state: SessionState
    rate_per_unit: int
    accumulated_cost: int
    rating: Optional[int] = None
    feedback: Optional[str] = None
    rated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class MessageResponse(BaseModel):
    id: int
    session_id: int
    sender_id: int
    kind: MessageKind
    content: Optional[str] = None
    file_name: Optional[str] = None
    byte_size: Optional[int] = None
    url: Optional[str] = None
    mime_type: Optional[str] = None
    cost: int
    created_at: datetime

    class Config:
        from_attributes = True


@router.post(
    "",
    response_model=SessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Open a session with a mentor",
    description="Students only. An already open session with the same mentor is returned as is.",
)
async def create_session(
    body: CreateSessionRequest,
    principal: TokenPayload = Depends(require_student),
    db: AsyncSession = Depends(get_db),
):
    service = SessionService(db)
    return await service.create(body.mentor_id, principal.user_id, body.rate_per_unit)


@router.get(
    "",
    response_model=List[SessionResponse],
    summary="List own sessions",
    description="Sessions where the caller is mentor or student, newest first.",
)
async def list_sessions(
    state: Optional[SessionState] = None,
    limit: int = Query(default=20, ge=1, le=100),
    principal: TokenPayload = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    service = SessionService(db)
    return await service.list_for_user(principal.user_id, state=state, limit=limit)


@router.get(
    "/{session_id}",
    response_model=SessionResponse,
    summary="Read one session",
)
async def get_session(
    session_id: int,
    principal: TokenPayload = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    service = SessionService(db)
    session = await service.get(session_id)
    service.ensure_participant(session, principal.user_id)
    return session


@router.post("/{session_id}/start", response_model=SessionResponse, summary="scheduled → ongoing (mentor)")
async def start_session(
    session_id: int,
    principal: TokenPayload = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    return await SessionService(db).start(session_id, principal.user_id)


@router.post("/{session_id}/end", response_model=SessionResponse, summary="ongoing → completed")
async def end_session(
    session_id: int,
    principal: TokenPayload = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    return await SessionService(db).end(session_id, principal.user_id)


@router.post("/{session_id}/cancel", response_model=SessionResponse, summary="scheduled → cancelled")
async def cancel_session(
    session_id: int,
    principal: TokenPayload = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    return await SessionService(db).cancel(session_id, principal.user_id)


@router.post("/{session_id}/no-show", response_model=SessionResponse, summary="scheduled → no_show (mentor)")
async def mark_no_show(
    session_id: int,
    principal: TokenPayload = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    return await SessionService(db).mark_no_show(session_id, principal.user_id)


@router.post(
    "/{session_id}/feedback",
    response_model=SessionResponse,
    summary="Rate a completed session (student, once)",
)
async def rate_session(
    session_id: int,
    body: FeedbackRequest,
    principal: TokenPayload = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    return await SessionService(db).rate(session_id, principal.user_id, body.rating, body.feedback)


@router.post(
    "/{session_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Send a text message or an uploaded attachment",
    description=(
        "Student messages are charged per block at the session rate. "
        "Insufficient balance returns 402 and nothing is stored."
    ),
)
async def submit_message(
    session_id: int,
    payload: MessagePayload = Body(...),
    principal: TokenPayload = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    fanout: RealtimeFanout = Depends(get_fanout),
):
    service = MeteringService(db, fanout=fanout)
    return await service.submit(session_id, principal.user_id, payload)


@router.get(
    "/{session_id}/messages",
    response_model=List[MessageResponse],
    summary="Re-fetch session messages",
    description="Oldest first. Pass after_id to fetch only what arrived after the last message the client saw.",
)
async def list_messages(
    session_id: int,
    after_id: Optional[int] = Query(default=None, ge=0),
    limit: int = Query(default=100, ge=1, le=100),
    principal: TokenPayload = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    service = MeteringService(db)
    return await service.list_messages(session_id, principal.user_id, after_id=after_id, limit=limit)
