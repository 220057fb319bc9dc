"""
Metering Service - turns one piece of conversation content into a charge

Cost rules:
- text: ceil(utf-8 bytes / TEXT_BLOCK_BYTES) blocks
- attachment: ceil(byte_size / FILE_BLOCK_BYTES) blocks
- cost = blocks * session.rate_per_unit, charged to the student only;
  mentor messages are free and never touch the ledger
- while the mentor is offline a student message is charged only when
  BILL_WHILE_OFFLINE is on; otherwise it is stored as a free note

``submit`` debits and stores the message in one database transaction under
the student's wallet lock: either both the debit and the message exist, or
neither does.
"""
import math

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import SessionClosedError, ValidationException
from app.core.locks import UserLockRegistry
from app.core.logging import bind_log_context, get_logger, log_async_operation
from app.db.models.mentor_session import MentorSession
from app.db.models.session_message import SessionMessage, MessageKind
from app.domain.payloads import TextPayload, AttachmentPayload
from app.domain.services.presence_service import PresenceService
from app.domain.services.session_service import SessionService
from app.realtime.events import new_message_event

logger = get_logger(__name__)


def blocks_for_text(content: str, block_bytes: int | None = None) -> int:
    block_bytes = block_bytes or settings.TEXT_BLOCK_BYTES
    return math.ceil(len(content.encode("utf-8")) / block_bytes)


def blocks_for_file(byte_size: int, block_bytes: int | None = None) -> int:
    block_bytes = block_bytes or settings.FILE_BLOCK_BYTES
    return math.ceil(byte_size / block_bytes)


def blocks_for(payload: TextPayload | AttachmentPayload) -> int:
    if isinstance(payload, TextPayload):
        return blocks_for_text(payload.content)
    return blocks_for_file(payload.byte_size)


def validate_payload(payload: TextPayload | AttachmentPayload) -> None:
    """Reject content that could never be billed or stored"""
    if isinstance(payload, TextPayload):
        if not payload.content.strip():
            raise ValidationException("Message content is empty", field="content")
        return
    if payload.byte_size <= 0:
        raise ValidationException("Attachment byte_size must be positive", field="byte_size")
    if payload.byte_size > settings.MAX_ATTACHMENT_BYTES:
        raise ValidationException(
            "Attachment is too large",
            field="byte_size",
            details={"max_bytes": settings.MAX_ATTACHMENT_BYTES},
        )


class MeteringService:
    """Charges the student per block and stores the message"""

    def __init__(
        self,
        db: AsyncSession,
        fanout=None,
        locks: UserLockRegistry | None = None,
        bill_while_offline: bool | None = None,
    ):
        self.db = db
        self.fanout = fanout
        self.sessions = SessionService(db, locks)
        self.presence = PresenceService(db)
        self.bill_while_offline = (
            settings.BILL_WHILE_OFFLINE if bill_while_offline is None else bill_while_offline
        )

    async def quote(
        self,
        session: MentorSession,
        sender_id: int,
        payload: TextPayload | AttachmentPayload,
    ) -> int:
        """Cost this payload would be charged right now (0 for the mentor)"""
        if sender_id != session.student_id:
            return 0
        if not self.bill_while_offline and not await self.presence.is_online(session.mentor_id):
            return 0
        return blocks_for(payload) * session.rate_per_unit

    async def submit(
        self,
        session_id: int,
        sender_id: int,
        payload: TextPayload | AttachmentPayload,
    ) -> SessionMessage:
        """
        Charge (if needed), store and fan out one message.

        Raises SessionNotFoundError, ForbiddenError (sender not in session),
        SessionClosedError, ValidationException or InsufficientBalanceError.
        On any failure nothing is stored and nothing is charged.
        """
        with bind_log_context(session_id=session_id, sender_id=sender_id):
            return await self._submit(session_id, sender_id, payload)

    @log_async_operation("submit_message")
    async def _submit(
        self,
        session_id: int,
        sender_id: int,
        payload: TextPayload | AttachmentPayload,
    ) -> SessionMessage:
        validate_payload(payload)

        session = await self.sessions.get(session_id)
        self.sessions.ensure_participant(session, sender_id)
        if not session.is_open:
            raise SessionClosedError(session.id, session.state.value)

        cost = await self.quote(session, sender_id, payload)

        if cost > 0:
            async with self.sessions.ledger.locked(sender_id):
                message = await self._charge_and_store(session, sender_id, payload, cost)
        else:
            if sender_id == session.student_id:
                logger.info(
                    "Student message not billed, mentor offline",
                    extra_data={"session_id": session.id, "mentor_id": session.mentor_id},
                )
            message = await self._charge_and_store(session, sender_id, payload, 0)

        if self.fanout is not None:
            self.fanout.broadcast(session.id, new_message_event(message))

        return message

    async def _charge_and_store(
        self,
        session: MentorSession,
        sender_id: int,
        payload: TextPayload | AttachmentPayload,
        cost: int,
    ) -> SessionMessage:
        try:
            if cost > 0:
                await self.sessions.charge_if_open(
                    session,
                    cost,
                    description=f"Session #{session.id}: {blocks_for(payload)} {payload.kind} block(s)",
                )

            message = SessionMessage(
                session_id=session.id,
                sender_id=sender_id,
                cost=cost,
            )
            if isinstance(payload, TextPayload):
                message.kind = MessageKind.TEXT
                message.content = payload.content
            else:
                message.kind = MessageKind.ATTACHMENT
                message.file_name = payload.file_name
                message.byte_size = payload.byte_size
                message.url = payload.url
                message.mime_type = payload.mime_type

            self.db.add(message)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(message)
        return message

    async def list_messages(
        self,
        session_id: int,
        user_id: int,
        after_id: int | None = None,
        limit: int | None = None,
    ) -> list[SessionMessage]:
        """Messages of a session, oldest first. This is what a reconnecting client re-fetches"""
        session = await self.sessions.get(session_id)
        self.sessions.ensure_participant(session, user_id)

        limit = max(1, min(limit or settings.MAX_PAGE_LIMIT, settings.MAX_PAGE_LIMIT))
        query = select(SessionMessage).where(SessionMessage.session_id == session_id)
        if after_id is not None:
            query = query.where(SessionMessage.id > after_id)
        result = await self.db.execute(query.order_by(SessionMessage.id.asc()).limit(limit))
        return list(result.scalars().all())
