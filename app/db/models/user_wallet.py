"""
User Wallet Model - Balance Tracking
"""
from sqlalchemy import Column, Integer, BigInteger, DateTime, ForeignKey, CheckConstraint

from app.db.database import Base, utcnow


class UserWallet(Base):
    """Current balance per user, in the smallest currency unit"""

    __tablename__ = "user_wallets"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)

    # Mutated only by LedgerService through conditional UPDATEs
    balance = Column(BigInteger, nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_user_wallets_balance_non_negative"),
    )
