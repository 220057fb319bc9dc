"""
Payment Reconciler - gateway confirmations into exactly one ledger credit

Flow:
1. The client creates an order at the gateway (outside this service) and
   registers it here with ``create_pending_credit`` → a pending transaction.
2. The logged-in owner relays the gateway confirmation to ``verify_and_settle``
   with the order id, payment id and an HMAC-SHA256 signature over
   ``"{order_id}|{payment_id}"``. Orders owned by someone else are reported
   as not found and never touched.
3. A valid signature completes the pending transaction through
   ``LedgerService.credit``; replaying the callback is a safe no-op.
"""
import hashlib
import hmac
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    DuplicateExternalRefError,
    InvalidSignatureError,
    PaymentFailedError,
    PaymentNotFoundError,
    ValidationException,
)
from app.core.locks import UserLockRegistry
from app.core.logging import bind_log_context, get_logger, log_async_operation
from app.db.database import utcnow
from app.db.models.wallet_transaction import (
    WalletTransaction,
    TransactionKind,
    TransactionStatus,
)
from app.domain.services.ledger_service import LedgerService, validate_amount

logger = get_logger(__name__)

RECHARGE_DESCRIPTION = "Wallet recharge"


def compute_signature(external_order_id: str, external_payment_id: str, secret: str) -> str:
    """Hex HMAC-SHA256 of ``order_id|payment_id``, the gateway's signing scheme"""
    message = f"{external_order_id}|{external_payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def signature_matches(
    external_order_id: str,
    external_payment_id: str,
    signature: str,
    secret: str,
) -> bool:
    """Constant-time comparison against the recomputed signature"""
    if not secret or not signature:
        return False
    expected = compute_signature(external_order_id, external_payment_id, secret)
    return hmac.compare_digest(expected.encode("utf-8"), signature.strip().lower().encode("utf-8"))


class PaymentService:
    """Creates pending credits and settles them from gateway callbacks"""

    def __init__(self, db: AsyncSession, locks: UserLockRegistry | None = None):
        self.db = db
        self.ledger = LedgerService(db, locks)

    @log_async_operation("create_pending_credit")
    async def create_pending_credit(
        self,
        user_id: int,
        amount: int,
        external_order_id: str,
    ) -> WalletTransaction:
        """
        Register a pending credit for a gateway order.

        Only one transaction may exist per order id. Repeating the same intent
        (same user, same amount) returns the existing row; anything else is a
        DuplicateExternalRefError.
        """
        validate_amount(amount)
        if not external_order_id or not external_order_id.strip():
            raise ValidationException("external_order_id is required", field="external_order_id")
        external_order_id = external_order_id.strip()

        existing = await self.ledger.find_by_external_ref(external_order_id)
        if existing is not None:
            return self._same_intent_or_raise(existing, user_id, amount, external_order_id)

        entry = WalletTransaction(
            user_id=user_id,
            kind=TransactionKind.CREDIT,
            amount=amount,
            description=RECHARGE_DESCRIPTION,
            external_ref=external_order_id,
            status=TransactionStatus.PENDING,
        )
        self.db.add(entry)
        try:
            await self.db.commit()
        except IntegrityError:
            # A concurrent request registered the same order id first
            await self.db.rollback()
            existing = await self.ledger.find_by_external_ref(external_order_id)
            if existing is None:
                raise
            return self._same_intent_or_raise(existing, user_id, amount, external_order_id)

        await self.db.refresh(entry)
        logger.info(
            "Pending credit created",
            extra_data={
                "user_id": user_id,
                "amount": amount,
                "external_order_id": external_order_id,
                "transaction_id": entry.id,
            },
        )
        return entry

    @staticmethod
    def _same_intent_or_raise(
        existing: WalletTransaction,
        user_id: int,
        amount: int,
        external_order_id: str,
    ) -> WalletTransaction:
        if (
            existing.user_id == user_id
            and existing.amount == amount
            and existing.kind == TransactionKind.CREDIT
        ):
            return existing
        logger.warning(
            "Order id reused for a different credit",
            extra_data={
                "external_order_id": external_order_id,
                "existing_user_id": existing.user_id,
                "requested_user_id": user_id,
            },
        )
        raise DuplicateExternalRefError(external_order_id)

    async def verify_and_settle(
        self,
        external_order_id: str,
        external_payment_id: str,
        signature: str,
        expected_secret: str,
        owner_id: int | None = None,
    ) -> WalletTransaction:
        """
        Verify a gateway callback and credit the wallet exactly once.

        ``owner_id`` is the caller relaying the confirmation; when given, it
        must own the order.

        - unknown order, or one owned by another user → PaymentNotFoundError
        - bad signature → transaction marked failed (if still pending),
          InvalidSignatureError; the balance is never touched
        - already completed → returned unchanged (safe retry)
        - already failed → PaymentFailedError
        """
        with bind_log_context(external_order_id=external_order_id):
            return await self._verify_and_settle(
                external_order_id, external_payment_id, signature, expected_secret, owner_id
            )

    @log_async_operation("verify_and_settle")
    async def _verify_and_settle(
        self,
        external_order_id: str,
        external_payment_id: str,
        signature: str,
        expected_secret: str,
        owner_id: int | None,
    ) -> WalletTransaction:
        entry = await self.ledger.find_by_external_ref(external_order_id)
        if entry is None or entry.kind != TransactionKind.CREDIT:
            raise PaymentNotFoundError(external_order_id)
        if owner_id is not None and entry.user_id != owner_id:
            logger.warning(
                "Payment confirmation for another user's order",
                extra_data={"external_order_id": external_order_id, "caller_id": owner_id},
            )
            raise PaymentNotFoundError(external_order_id)

        user_id = entry.user_id
        async with self.ledger.locked(user_id):
            try:
                entry = await self.ledger.find_by_external_ref(external_order_id, for_update=True)

                if not signature_matches(external_order_id, external_payment_id, signature, expected_secret):
                    if entry.status == TransactionStatus.PENDING:
                        entry.status = TransactionStatus.FAILED
                        entry.external_payment_id = external_payment_id
                        entry.settled_at = utcnow()
                        await self.db.commit()
                    logger.warning(
                        "Payment signature mismatch",
                        extra_data={
                            "external_order_id": external_order_id,
                            "user_id": user_id,
                            "transaction_status": entry.status.value,
                        },
                    )
                    raise InvalidSignatureError(external_order_id)

                if entry.status == TransactionStatus.COMPLETED:
                    logger.info(
                        "Payment already settled, callback replay",
                        extra_data={"external_order_id": external_order_id, "user_id": user_id},
                    )
                    return entry

                if entry.status == TransactionStatus.FAILED:
                    raise PaymentFailedError(external_order_id)

                settled = await self.ledger.credit(
                    user_id=user_id,
                    amount=entry.amount,
                    description=entry.description,
                    external_ref=external_order_id,
                    external_payment_id=external_payment_id,
                )
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

        await self.db.refresh(settled)
        return settled

    async def find_stale_pending(self, older_than: timedelta | None = None) -> list[WalletTransaction]:
        """Pending credits older than the timeout, oldest first (reported, never cancelled)"""
        if older_than is None:
            older_than = timedelta(minutes=settings.PENDING_CREDIT_TIMEOUT_MINUTES)
        cutoff: datetime = utcnow() - older_than

        result = await self.db.execute(
            select(WalletTransaction)
            .where(
                WalletTransaction.status == TransactionStatus.PENDING,
                WalletTransaction.created_at < cutoff,
            )
            .order_by(WalletTransaction.created_at.asc())
        )
        return list(result.scalars().all())
