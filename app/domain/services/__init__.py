"""
Domain Services
"""
from app.domain.services.ledger_service import LedgerService
from app.domain.services.payment_service import PaymentService
from app.domain.services.session_service import SessionService
from app.domain.services.presence_service import PresenceService
from app.domain.services.metering_service import MeteringService

__all__ = [
    "LedgerService",
    "PaymentService",
    "SessionService",
    "PresenceService",
    "MeteringService",
]
