"""
Session Message Model - immutable chat content with the cost it was charged
"""
import enum
from sqlalchemy import Column, Integer, BigInteger, DateTime, ForeignKey, String, Text, Enum as SQLEnum, Index

from app.db.database import Base, utcnow


class MessageKind(str, enum.Enum):
    TEXT = "text"
    ATTACHMENT = "attachment"


class SessionMessage(Base):
    """A text message or an uploaded attachment inside a session.

    Exactly one of the two column groups is filled, selected by ``kind``:
    ``content`` for text, ``file_name``/``byte_size``/``url``/``mime_type``
    for attachments.
    """

    __tablename__ = "session_messages"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("mentor_sessions.id"), nullable=False)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    kind = Column(SQLEnum(MessageKind), nullable=False)
    content = Column(Text, nullable=True)

    file_name = Column(String(255), nullable=True)
    byte_size = Column(BigInteger, nullable=True)
    url = Column(Text, nullable=True)
    mime_type = Column(String(100), nullable=True)

    cost = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_session_messages_session_id_id", "session_id", "id"),
    )
