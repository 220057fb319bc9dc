"""
Mentor Presence Model - online flag and last-seen timestamp
"""
from sqlalchemy import Column, Integer, Boolean, DateTime, ForeignKey

from app.db.database import Base, utcnow


class MentorPresence(Base):
    """Written by the mentor's own client, read by metering and fan-out"""

    __tablename__ = "mentor_presence"

    mentor_id = Column(Integer, ForeignKey("users.id"), primary_key=True)
    is_online = Column(Boolean, nullable=False, default=False)
    last_seen_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
