"""
Celery Tasks - periodic reports for operators

Nothing here moves money. Stale pending credits and ledger drift are logged
for a human to look at; they are never auto-cancelled or auto-corrected.
"""
import asyncio
from contextlib import contextmanager
from datetime import timedelta

from sqlalchemy import select

from app.workers.celery_app import celery_app
from app.core.config import settings
from app.core.logging import get_logger, set_correlation_id
from app.db.database import get_task_session
from app.db.models.user_wallet import UserWallet
from app.domain.services.ledger_service import LedgerService
from app.domain.services.payment_service import PaymentService

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


async def collect_stale_pending_credits(db, older_than_minutes: int) -> dict:
    service = PaymentService(db)
    stale = await service.find_stale_pending(timedelta(minutes=older_than_minutes))

    for entry in stale:
        logger.warning(
            "Pending credit never settled",
            extra_data={
                "transaction_id": entry.id,
                "user_id": entry.user_id,
                "amount": entry.amount,
                "external_order_id": entry.external_ref,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            },
        )

    logger.info(
        "Stale pending credit report",
        extra_data={"count": len(stale), "older_than_minutes": older_than_minutes},
    )
    return {
        "count": len(stale),
        "external_order_ids": [entry.external_ref for entry in stale],
    }


async def collect_ledger_drift(db) -> dict:
    """Wallets whose balance differs from completed credits minus completed debits"""
    ledger = LedgerService(db)
    result = await db.execute(select(UserWallet.user_id, UserWallet.balance).order_by(UserWallet.user_id))

    drifted = []
    checked = 0
    for user_id, balance in result.all():
        checked += 1
        expected = await ledger.ledger_sum(user_id)
        if expected != balance:
            drifted.append(user_id)
            logger.error(
                "Wallet balance does not match its ledger",
                extra_data={"user_id": user_id, "balance": balance, "ledger_sum": expected},
            )

    logger.info("Ledger audit finished", extra_data={"checked": checked, "drifted": len(drifted)})
    return {"checked": checked, "drifted_user_ids": drifted}


@celery_app.task(name="app.workers.tasks.report_stale_pending_credits")
def report_stale_pending_credits(older_than_minutes: int | None = None):
    """Log pending credits older than PENDING_CREDIT_TIMEOUT_MINUTES"""
    minutes = older_than_minutes or settings.PENDING_CREDIT_TIMEOUT_MINUTES

    async def _report():
        async with get_task_session() as db:
            return await collect_stale_pending_credits(db, minutes)

    return run_async(_report())


@celery_app.task(name="app.workers.tasks.audit_ledger_balances")
def audit_ledger_balances():
    async def _audit():
        async with get_task_session() as db:
            return await collect_ledger_drift(db)

    return run_async(_audit())
