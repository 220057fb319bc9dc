"""
Session Service - lifecycle state machine and accumulated cost

    scheduled ──start──▶ ongoing ──end──▶ completed
        │
        ├──cancel──▶ cancelled
        └──no-show─▶ no_show

Terminal states are final. A completed session can additionally be rated
once by its student. Each transition locks the session row
(SELECT ... FOR UPDATE) so two participants racing on the same session
cannot both win.
"""
from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    ForbiddenError,
    InvalidMentorError,
    InvalidStateError,
    SessionAlreadyRatedError,
    SessionClosedError,
    SessionNotFoundError,
    ValidationException,
)
from app.core.locks import UserLockRegistry
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.mentor_session import MentorSession, SessionState, OPEN_STATES
from app.db.models.user import User
from app.db.models.wallet_transaction import WalletTransaction
from app.domain.services.ledger_service import LedgerService

logger = get_logger(__name__)

RATING_MIN, RATING_MAX = 1, 5
FEEDBACK_MAX_LENGTH = 2000


class SessionService:
    """Owns session state; the only path from metering to the ledger"""

    def __init__(self, db: AsyncSession, locks: UserLockRegistry | None = None):
        self.db = db
        self.ledger = LedgerService(db, locks)

    async def create(
        self,
        mentor_id: int,
        student_id: int,
        rate_per_unit: int | None = None,
    ) -> MentorSession:
        """
        Open a session between a student and an approved mentor.

        If the pair already has an open session it is returned instead of a
        second one. ``rate_per_unit`` defaults to the mentor's own rate.
        """
        if mentor_id == student_id:
            raise ValidationException("A mentor cannot open a session with themself", field="student_id")

        mentor = await self.db.get(User, mentor_id)
        if mentor is None:
            raise InvalidMentorError(mentor_id, "not found")
        if not mentor.is_approved_mentor:
            raise InvalidMentorError(mentor_id, "not an active approved mentor")

        if rate_per_unit is None:
            rate_per_unit = mentor.rate_per_block
        if rate_per_unit is None or isinstance(rate_per_unit, bool) or rate_per_unit <= 0:
            raise ValidationException("rate_per_unit must be a positive integer", field="rate_per_unit")

        # One open session per pair, even for concurrent requests
        async with self.ledger.locked(student_id):
            result = await self.db.execute(
                select(MentorSession)
                .where(
                    MentorSession.mentor_id == mentor_id,
                    MentorSession.student_id == student_id,
                    MentorSession.state.in_(OPEN_STATES),
                )
                .order_by(MentorSession.id.desc())
                .limit(1)
            )
            existing = result.scalar_one_or_none()
            if existing is not None:
                return existing

            session = MentorSession(
                mentor_id=mentor_id,
                student_id=student_id,
                state=SessionState.SCHEDULED,
                rate_per_unit=rate_per_unit,
                accumulated_cost=0,
            )
            self.db.add(session)
            await self.db.commit()
        await self.db.refresh(session)

        logger.info(
            "Session created",
            extra_data={
                "session_id": session.id,
                "mentor_id": mentor_id,
                "student_id": student_id,
                "rate_per_unit": rate_per_unit,
            },
        )
        return session

    async def get(self, session_id: int, for_update: bool = False) -> MentorSession:
        query = (
            select(MentorSession)
            .where(MentorSession.id == session_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        session = result.scalar_one_or_none()
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    @staticmethod
    def ensure_participant(session: MentorSession, user_id: int) -> None:
        if not session.is_participant(user_id):
            raise ForbiddenError(f"User {user_id} is not part of session {session.id}", actor_id=user_id)

    async def list_for_user(
        self,
        user_id: int,
        state: SessionState | None = None,
        limit: int | None = None,
    ) -> list[MentorSession]:
        """Sessions where the user is mentor or student, newest first"""
        limit = max(1, min(limit or settings.DEFAULT_PAGE_LIMIT, settings.MAX_PAGE_LIMIT))
        query = select(MentorSession).where(
            or_(MentorSession.mentor_id == user_id, MentorSession.student_id == user_id)
        )
        if state is not None:
            query = query.where(MentorSession.state == state)
        result = await self.db.execute(
            query.order_by(MentorSession.created_at.desc(), MentorSession.id.desc()).limit(limit)
        )
        return list(result.scalars().all())

    async def start(self, session_id: int, actor_id: int) -> MentorSession:
        """scheduled → ongoing; mentor only"""
        return await self._transition(
            session_id,
            actor_id,
            action="start",
            allowed_from={SessionState.SCHEDULED},
            target=SessionState.ONGOING,
            mentor_only=True,
        )

    async def end(self, session_id: int, actor_id: int) -> MentorSession:
        """ongoing → completed; either participant. accumulated_cost is frozen from here on."""
        return await self._transition(
            session_id,
            actor_id,
            action="end",
            allowed_from={SessionState.ONGOING},
            target=SessionState.COMPLETED,
        )

    async def cancel(self, session_id: int, actor_id: int) -> MentorSession:
        """scheduled → cancelled; either participant"""
        return await self._transition(
            session_id,
            actor_id,
            action="cancel",
            allowed_from={SessionState.SCHEDULED},
            target=SessionState.CANCELLED,
        )

    async def mark_no_show(self, session_id: int, actor_id: int) -> MentorSession:
        """scheduled → no_show; the mentor reports the student did not turn up"""
        return await self._transition(
            session_id,
            actor_id,
            action="mark no-show",
            allowed_from={SessionState.SCHEDULED},
            target=SessionState.NO_SHOW,
            mentor_only=True,
        )

    async def rate(
        self,
        session_id: int,
        actor_id: int,
        rating: int,
        feedback: str | None = None,
    ) -> MentorSession:
        """
        Record the student's rating (1-5) and optional feedback.

        Only the student of a completed session may rate it, and only once.
        The rating is added to the mentor's running totals in the same commit.
        """
        if isinstance(rating, bool) or not isinstance(rating, int) or not RATING_MIN <= rating <= RATING_MAX:
            raise ValidationException(
                f"rating must be an integer from {RATING_MIN} to {RATING_MAX}", field="rating"
            )
        if feedback is not None:
            feedback = feedback.strip() or None
        if feedback is not None and len(feedback) > FEEDBACK_MAX_LENGTH:
            raise ValidationException(
                f"feedback is limited to {FEEDBACK_MAX_LENGTH} characters", field="feedback"
            )

        try:
            session = await self.get(session_id, for_update=True)

            self.ensure_participant(session, actor_id)
            if actor_id != session.student_id:
                raise ForbiddenError(f"Only the student may rate session {session_id}", actor_id=actor_id)
            if session.state != SessionState.COMPLETED:
                raise InvalidStateError(session.state.value, "rate", session_id)
            if session.rating is not None:
                raise SessionAlreadyRatedError(session_id)

            # Conditional on rating IS NULL so a racing second request cannot overwrite
            result = await self.db.execute(
                update(MentorSession)
                .where(MentorSession.id == session_id, MentorSession.rating.is_(None))
                .values(rating=rating, feedback=feedback, rated_at=utcnow(), updated_at=utcnow())
                .returning(MentorSession.id)
                .execution_options(synchronize_session=False)
            )
            if result.scalar_one_or_none() is None:
                raise SessionAlreadyRatedError(session_id)

            await self.db.execute(
                update(User)
                .where(User.id == session.mentor_id)
                .values(
                    rating_count=User.rating_count + 1,
                    rating_sum=User.rating_sum + rating,
                )
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(session)
        logger.info(
            "Session rated",
            extra_data={
                "session_id": session_id,
                "mentor_id": session.mentor_id,
                "rating": rating,
                "has_feedback": feedback is not None,
            },
        )
        return session

    async def _transition(
        self,
        session_id: int,
        actor_id: int,
        *,
        action: str,
        allowed_from: set[SessionState],
        target: SessionState,
        mentor_only: bool = False,
    ) -> MentorSession:
        try:
            session = await self.get(session_id, for_update=True)

            self.ensure_participant(session, actor_id)
            if mentor_only and actor_id != session.mentor_id:
                raise ForbiddenError(f"Only the mentor may {action} session {session_id}", actor_id=actor_id)

            if session.state not in allowed_from:
                raise InvalidStateError(session.state.value, action, session_id)

            previous = session.state
            now = utcnow()
            session.state = target
            if target == SessionState.ONGOING:
                session.started_at = now
            else:
                session.ended_at = now

            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(session)
        logger.info(
            "Session state changed",
            extra_data={
                "session_id": session_id,
                "actor_id": actor_id,
                "from_state": previous.value,
                "to_state": target.value,
            },
        )
        return session

    async def charge_if_open(
        self,
        session: MentorSession,
        amount: int,
        description: str,
    ) -> WalletTransaction:
        """
        Debit the student and add the amount to the session's accumulated cost.

        Used only by the metering engine, inside its unit of work: nothing is
        committed here. Raises SessionClosedError when the session no longer
        accepts charges, InsufficientBalanceError from the ledger otherwise.
        """
        current_state = await self.db.scalar(
            select(MentorSession.state).where(MentorSession.id == session.id)
        )
        if current_state not in OPEN_STATES:
            raise SessionClosedError(session.id, current_state.value if current_state else "unknown")

        entry = await self.ledger.debit(session.student_id, amount, description)

        # Conditional on the state as well, so a concurrent end() cannot be overtaken
        result = await self.db.execute(
            update(MentorSession)
            .where(MentorSession.id == session.id, MentorSession.state.in_(OPEN_STATES))
            .values(accumulated_cost=MentorSession.accumulated_cost + amount, updated_at=utcnow())
            .returning(MentorSession.accumulated_cost)
            .execution_options(synchronize_session=False)
        )
        if result.scalar_one_or_none() is None:
            raise SessionClosedError(session.id, "closed during charge")

        return entry
