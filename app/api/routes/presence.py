"""
Presence API Routes - mentors report online/offline, anyone can read it
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_principal, get_fanout, require_mentor
from app.core.auth import TokenPayload
from app.db.database import get_db
from app.domain.services.presence_service import PresenceService
from app.realtime.fanout import RealtimeFanout

router = APIRouter()


class PresenceUpdateRequest(BaseModel):
    is_online: bool


class PresenceResponse(BaseModel):
    mentor_id: int
    is_online: bool
    last_seen_at: Optional[datetime] = None

    class Config:
        from_attributes = True


@router.put(
    "",
    response_model=PresenceResponse,
    summary="Report own presence (mentor)",
    description="Broadcast to every connected client as a PRESENCE event.",
)
async def set_presence(
    body: PresenceUpdateRequest,
    principal: TokenPayload = Depends(require_mentor),
    db: AsyncSession = Depends(get_db),
    fanout: RealtimeFanout = Depends(get_fanout),
):
    service = PresenceService(db, fanout=fanout)
    return await service.set_presence(principal.user_id, body.is_online)


@router.get(
    "/{mentor_id}",
    response_model=PresenceResponse,
    summary="Mentor presence",
    description="A mentor who never reported presence is offline with no last-seen time.",
)
async def get_presence(
    mentor_id: int,
    _: TokenPayload = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    presence = await PresenceService(db).get_presence(mentor_id)
    if presence is None:
        return {"mentor_id": mentor_id, "is_online": False, "last_seen_at": None}
    return presence
