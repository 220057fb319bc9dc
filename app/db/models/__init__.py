"""
Database Models
"""
from app.db.models.user import User
from app.db.models.user_wallet import UserWallet
from app.db.models.wallet_transaction import WalletTransaction
from app.db.models.mentor_session import MentorSession
from app.db.models.session_message import SessionMessage
from app.db.models.mentor_presence import MentorPresence

__all__ = [
    "User",
    "UserWallet",
    "WalletTransaction",
    "MentorSession",
    "SessionMessage",
    "MentorPresence",
]
