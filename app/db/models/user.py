"""
User Model - Students, Mentors and Admins

Owned by the profile/onboarding service. The conversation engine reads it to
check that a mentor may take sessions and to find the mentor's rate, and folds
session ratings into the mentor's running totals.
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Boolean

from app.db.database import Base, utcnow


class UserRole(str, enum.Enum):
    STUDENT = "student"
    MENTOR = "mentor"
    ADMIN = "admin"


class ApprovalStatus(str, enum.Enum):
    """Mentor application status"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    BLOCKED = "blocked"


class User(Base):
    """Marketplace user"""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=True)
    role = Column(SQLEnum(UserRole), default=UserRole.STUDENT, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    # Mentor-specific fields
    approval_status = Column(
        SQLEnum(
            ApprovalStatus,
            name="approval_status",
            values_callable=lambda x: [e.value for e in x]
        ),
        nullable=True,
        index=True
    )
    rate_per_block = Column(Integer, nullable=True)  # default session rate, smallest currency unit
    rating_count = Column(Integer, default=0, nullable=False)
    rating_sum = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_approved_mentor(self) -> bool:
        """Active mentor whose application was approved"""
        return (
            self.role == UserRole.MENTOR
            and self.approval_status == ApprovalStatus.APPROVED
            and bool(self.is_active)
        )

    @property
    def rating_average(self) -> float | None:
        if not self.rating_count:
            return None
        return round(self.rating_sum / self.rating_count, 2)
