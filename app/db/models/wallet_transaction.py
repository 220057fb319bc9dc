"""
Wallet Transaction Model - Immutable Ledger Entries

Only ``status`` ever changes, once, from pending to completed or failed.
"""
import enum
from sqlalchemy import (
    Column, Integer, BigInteger, DateTime, ForeignKey, String,
    Enum as SQLEnum, Index, CheckConstraint,
)

from app.db.database import Base, utcnow


class TransactionKind(str, enum.Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class WalletTransaction(Base):
    """One ledger entry"""

    __tablename__ = "wallet_transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    kind = Column(SQLEnum(TransactionKind), nullable=False)
    amount = Column(BigInteger, nullable=False)  # always positive; kind gives the sign
    resulting_balance = Column(BigInteger, nullable=True)  # NULL while pending
    description = Column(String(500), nullable=False)

    # Payment gateway order id, unique so a callback can only ever settle one row
    external_ref = Column(String(100), unique=True, nullable=True)
    external_payment_id = Column(String(100), nullable=True)

    status = Column(SQLEnum(TransactionStatus), nullable=False, default=TransactionStatus.PENDING)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    settled_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_wallet_transactions_amount_positive"),
        Index("ix_wallet_transactions_user_created", "user_id", "created_at"),
        Index("ix_wallet_transactions_status_created", "status", "created_at"),
    )

    @property
    def signed_amount(self) -> int:
        """Positive for credits, negative for debits"""
        return self.amount if self.kind == TransactionKind.CREDIT else -self.amount
