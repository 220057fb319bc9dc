"""
Ledger Service - the single point of truth for money movement

Wallet balances change only through conditional UPDATE statements:

    UPDATE user_wallets SET balance = balance - :amount
    WHERE user_id = :user_id AND balance >= :amount
    RETURNING balance

No row back means the balance was too low, so two concurrent debits can never
both pass the check against the same stale balance. In-process callers also
hold ``wallet_locks.hold(user_id)`` around the whole unit of work (debit plus
whatever is persisted with it) so charge-then-persist is linearizable per user.

Methods here never commit; the caller owns the transaction.
"""
from sqlalchemy import select, update, func, case
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    DuplicateExternalRefError,
    InsufficientBalanceError,
    InvalidAmountError,
)
from app.core.locks import UserLockRegistry, wallet_locks
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.user_wallet import UserWallet
from app.db.models.wallet_transaction import (
    WalletTransaction,
    TransactionKind,
    TransactionStatus,
)

logger = get_logger(__name__)


def validate_amount(amount: int) -> None:
    # bool is an int subclass; True must not pass as 1
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmountError(amount)


class LedgerService:
    """Wallet balances and their transaction history"""

    def __init__(self, db: AsyncSession, locks: UserLockRegistry | None = None):
        self.db = db
        self.locks = locks or wallet_locks

    def locked(self, user_id: int):
        """Per-user serialization point; hold it around debit + dependent writes + commit"""
        return self.locks.hold(user_id)

    async def get_or_create_wallet(self, user_id: int) -> UserWallet:
        """Get existing wallet or create an empty one (flushed, not committed)"""
        result = await self.db.execute(
            select(UserWallet)
            .where(UserWallet.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        wallet = result.scalar_one_or_none()

        if not wallet:
            wallet = UserWallet(user_id=user_id, balance=0)
            self.db.add(wallet)
            await self.db.flush()

        return wallet

    async def get_balance(self, user_id: int) -> int:
        """Current balance; a user without a wallet has 0"""
        balance = await self.db.scalar(
            select(UserWallet.balance).where(UserWallet.user_id == user_id)
        )
        return int(balance or 0)

    async def debit(self, user_id: int, amount: int, description: str) -> WalletTransaction:
        """
        Take ``amount`` from the wallet and append a completed debit.

        Raises InsufficientBalanceError (and changes nothing) when the balance
        is lower than ``amount``.
        """
        validate_amount(amount)

        result = await self.db.execute(
            update(UserWallet)
            .where(UserWallet.user_id == user_id, UserWallet.balance >= amount)
            .values(balance=UserWallet.balance - amount, updated_at=utcnow())
            .returning(UserWallet.balance)
            .execution_options(synchronize_session=False)
        )
        new_balance = result.scalar_one_or_none()

        if new_balance is None:
            current = await self.get_balance(user_id)
            logger.info(
                "Debit rejected: insufficient balance",
                extra_data={"user_id": user_id, "amount": amount, "balance": current},
            )
            raise InsufficientBalanceError(user_id, current, amount)

        entry = WalletTransaction(
            user_id=user_id,
            kind=TransactionKind.DEBIT,
            amount=amount,
            resulting_balance=new_balance,
            description=description,
            status=TransactionStatus.COMPLETED,
            settled_at=utcnow(),
        )
        self.db.add(entry)
        await self.db.flush()

        logger.debug(
            "Wallet debited",
            extra_data={"user_id": user_id, "amount": amount, "balance_after": new_balance},
        )
        return entry

    async def credit(
        self,
        user_id: int,
        amount: int,
        description: str,
        external_ref: str | None = None,
        external_payment_id: str | None = None,
    ) -> WalletTransaction:
        """
        Add ``amount`` to the wallet.

        With ``external_ref``:
        - a completed transaction with that ref already exists → returned as is,
          the balance is not touched (replayed payment callbacks are no-ops);
        - a pending transaction with that ref exists → it is completed in place;
        - the ref belongs to another user/amount or a failed payment →
          DuplicateExternalRefError.
        """
        validate_amount(amount)

        pending: WalletTransaction | None = None
        if external_ref is not None:
            existing = await self.find_by_external_ref(external_ref, for_update=True)
            if existing is not None:
                if existing.status == TransactionStatus.COMPLETED:
                    logger.info(
                        "Credit already applied, replay ignored",
                        extra_data={"user_id": user_id, "external_ref": external_ref},
                    )
                    return existing
                if (
                    existing.status == TransactionStatus.FAILED
                    or existing.user_id != user_id
                    or existing.amount != amount
                    or existing.kind != TransactionKind.CREDIT
                ):
                    raise DuplicateExternalRefError(external_ref)
                pending = existing

        await self.get_or_create_wallet(user_id)
        result = await self.db.execute(
            update(UserWallet)
            .where(UserWallet.user_id == user_id)
            .values(balance=UserWallet.balance + amount, updated_at=utcnow())
            .returning(UserWallet.balance)
            .execution_options(synchronize_session=False)
        )
        new_balance = result.scalar_one()

        if pending is not None:
            entry = pending
            entry.status = TransactionStatus.COMPLETED
            entry.resulting_balance = new_balance
            entry.settled_at = utcnow()
            if external_payment_id:
                entry.external_payment_id = external_payment_id
        else:
            entry = WalletTransaction(
                user_id=user_id,
                kind=TransactionKind.CREDIT,
                amount=amount,
                resulting_balance=new_balance,
                description=description,
                external_ref=external_ref,
                external_payment_id=external_payment_id,
                status=TransactionStatus.COMPLETED,
                settled_at=utcnow(),
            )
            self.db.add(entry)
        await self.db.flush()

        logger.info(
            "Wallet credited",
            extra_data={
                "user_id": user_id,
                "amount": amount,
                "balance_after": new_balance,
                "external_ref": external_ref,
            },
        )
        return entry

    async def find_by_external_ref(
        self, external_ref: str, for_update: bool = False
    ) -> WalletTransaction | None:
        query = (
            select(WalletTransaction)
            .where(WalletTransaction.external_ref == external_ref)
            .execution_options(populate_existing=True)
        )
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def history(self, user_id: int, page: int = 1, limit: int | None = None) -> list[WalletTransaction]:
        """Transactions of a user, most recent first"""
        limit = limit or settings.DEFAULT_PAGE_LIMIT
        limit = max(1, min(limit, settings.MAX_PAGE_LIMIT))
        page = max(1, page)

        result = await self.db.execute(
            select(WalletTransaction)
            .where(WalletTransaction.user_id == user_id)
            .order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def ledger_sum(self, user_id: int) -> int:
        """Completed credits minus completed debits. Must always equal the balance"""
        signed = case(
            (WalletTransaction.kind == TransactionKind.CREDIT, WalletTransaction.amount),
            else_=-WalletTransaction.amount,
        )
        total = await self.db.scalar(
            select(func.coalesce(func.sum(signed), 0)).where(
                WalletTransaction.user_id == user_id,
                WalletTransaction.status == TransactionStatus.COMPLETED,
            )
        )
        return int(total or 0)
