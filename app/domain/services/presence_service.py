"""
Presence Service - mentor online flag and last-seen timestamp
"""
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ForbiddenError
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.mentor_presence import MentorPresence
from app.db.models.user import User, UserRole
from app.realtime.events import presence_event

logger = get_logger(__name__)


class PresenceService:
    def __init__(self, db: AsyncSession, fanout=None):
        self.db = db
        self.fanout = fanout

    async def get_presence(self, mentor_id: int) -> MentorPresence | None:
        result = await self.db.execute(
            select(MentorPresence)
            .where(MentorPresence.mentor_id == mentor_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def is_online(self, mentor_id: int) -> bool:
        """A mentor who never reported presence counts as offline"""
        is_online = await self.db.scalar(
            select(MentorPresence.is_online).where(MentorPresence.mentor_id == mentor_id)
        )
        return bool(is_online)

    async def set_presence(self, mentor_id: int, is_online: bool) -> MentorPresence:
        """
        Record the mentor's own online/offline report and broadcast it.

        ``last_seen_at`` is stamped when the mentor goes offline.
        """
        user = await self.db.get(User, mentor_id)
        if user is None or user.role != UserRole.MENTOR:
            raise ForbiddenError("Only mentors report presence", actor_id=mentor_id)

        presence = await self.get_presence(mentor_id)
        was_online = bool(presence and presence.is_online)
        if presence is None:
            presence = MentorPresence(mentor_id=mentor_id, is_online=is_online)
            self.db.add(presence)

        presence.is_online = is_online
        if was_online and not is_online:
            presence.last_seen_at = utcnow()
        presence.updated_at = utcnow()

        await self.db.commit()
        await self.db.refresh(presence)

        if was_online != is_online:
            logger.info(
                "Mentor presence changed",
                extra_data={"mentor_id": mentor_id, "is_online": is_online},
            )
        if self.fanout is not None:
            self.fanout.broadcast_all(presence_event(presence))

        return presence
