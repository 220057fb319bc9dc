"""
Mentor Session Model - one billable mentor–student conversation
"""
import enum
from sqlalchemy import Column, Integer, BigInteger, SmallInteger, Text, DateTime, ForeignKey, Enum as SQLEnum, Index

from app.db.database import Base, utcnow


class SessionState(str, enum.Enum):
    SCHEDULED = "scheduled"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


# States in which the session still accepts messages and charges
OPEN_STATES = frozenset({SessionState.SCHEDULED, SessionState.ONGOING})


class MentorSession(Base):
    """Conversation between one mentor and one student"""

    __tablename__ = "mentor_sessions"

    id = Column(Integer, primary_key=True, index=True)
    mentor_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    student_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    state = Column(SQLEnum(SessionState), nullable=False, default=SessionState.SCHEDULED, index=True)
    rate_per_unit = Column(Integer, nullable=False)
    accumulated_cost = Column(BigInteger, nullable=False, default=0)

    # Student feedback, set once after completion
    rating = Column(SmallInteger, nullable=True)  # 1-5
    feedback = Column(Text, nullable=True)
    rated_at = Column(DateTime, nullable=True)

    started_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_mentor_sessions_mentor_student", "mentor_id", "student_id"),
        Index("ix_mentor_sessions_student_created", "student_id", "created_at"),
    )

    @property
    def is_open(self) -> bool:
        return self.state in OPEN_STATES

    def is_participant(self, user_id: int) -> bool:
        return user_id in (self.mentor_id, self.student_id)
