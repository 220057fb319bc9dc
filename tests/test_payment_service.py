"""
Tests for the payment reconciler: signature checks, idempotent settlement,
pending-credit registration and the stale report.
"""
from datetime import timedelta

import pytest
from sqlalchemy import select, func, update

from app.core.exceptions import (
    DuplicateExternalRefError,
    InvalidSignatureError,
    PaymentFailedError,
    PaymentNotFoundError,
    ValidationException,
)
from app.db.database import utcnow
from app.db.models.wallet_transaction import WalletTransaction, TransactionStatus
from app.domain.services.ledger_service import LedgerService
from app.domain.services.payment_service import (
    PaymentService,
    compute_signature,
    signature_matches,
)
from tests.conftest import TEST_GATEWAY_SECRET


# ============================================================================
# Signature helpers
# ============================================================================

@pytest.mark.unit
def test_compute_signature_is_hmac_sha256_hex_over_order_and_payment():
    import hashlib
    import hmac

    expected = hmac.new(b"secret", b"order_1|pay_1", hashlib.sha256).hexdigest()
    assert compute_signature("order_1", "pay_1", "secret") == expected


@pytest.mark.unit
def test_signature_matches_accepts_valid_and_rejects_tampered():
    good = compute_signature("order_1", "pay_1", "secret")

    assert signature_matches("order_1", "pay_1", good, "secret") is True
    assert signature_matches("order_1", "pay_1", good.upper(), "secret") is True
    assert signature_matches("order_1", "pay_2", good, "secret") is False
    assert signature_matches("order_1", "pay_1", good, "other-secret") is False


@pytest.mark.unit
def test_signature_never_matches_without_secret_or_signature():
    good = compute_signature("order_1", "pay_1", "")
    assert signature_matches("order_1", "pay_1", good, "") is False
    assert signature_matches("order_1", "pay_1", "", "secret") is False


# ============================================================================
# create_pending_credit
# ============================================================================

@pytest.mark.unit
async def test_create_pending_credit(student, db_session):
    service = PaymentService(db_session)

    entry = await service.create_pending_credit(student.id, 500, "o1")

    assert entry.status == TransactionStatus.PENDING
    assert entry.external_ref == "o1"
    assert entry.amount == 500
    assert entry.resulting_balance is None
    assert await LedgerService(db_session).get_balance(student.id) == 0


@pytest.mark.unit
async def test_create_pending_credit_same_intent_returns_existing(student, db_session):
    service = PaymentService(db_session)

    first = await service.create_pending_credit(student.id, 500, "o1")
    second = await service.create_pending_credit(student.id, 500, "o1")

    assert second.id == first.id


@pytest.mark.unit
async def test_create_pending_credit_conflicting_reuse_rejected(student, user_factory, db_session):
    other = await user_factory(name="Other Student")
    service = PaymentService(db_session)
    await service.create_pending_credit(student.id, 500, "o1")

    with pytest.raises(DuplicateExternalRefError):
        await service.create_pending_credit(student.id, 700, "o1")
    with pytest.raises(DuplicateExternalRefError):
        await service.create_pending_credit(other.id, 500, "o1")


@pytest.mark.unit
async def test_create_pending_credit_requires_order_id(student, db_session):
    with pytest.raises(ValidationException):
        await PaymentService(db_session).create_pending_credit(student.id, 500, "   ")


# ============================================================================
# verify_and_settle
# ============================================================================

async def _settle(service, order, payment="pay_1", secret=TEST_GATEWAY_SECRET, signature=None, owner_id=None):
    signature = signature or compute_signature(order, payment, secret)
    return await service.verify_and_settle(order, payment, signature, secret, owner_id=owner_id)


@pytest.mark.unit
async def test_verify_and_settle_credits_wallet(student, db_session):
    service = PaymentService(db_session)
    await service.create_pending_credit(student.id, 500, "o1")

    settled = await _settle(service, "o1")

    assert settled.status == TransactionStatus.COMPLETED
    assert settled.external_payment_id == "pay_1"
    assert settled.resulting_balance == 500
    assert await LedgerService(db_session).get_balance(student.id) == 500


@pytest.mark.unit
async def test_verify_and_settle_twice_credits_once(student, db_session):
    service = PaymentService(db_session)
    await service.create_pending_credit(student.id, 500, "o1")

    first = await _settle(service, "o1")
    second = await _settle(service, "o1")

    assert second.id == first.id
    assert await LedgerService(db_session).get_balance(student.id) == 500
    count = await db_session.scalar(
        select(func.count()).select_from(WalletTransaction).where(WalletTransaction.user_id == student.id)
    )
    assert count == 1


@pytest.mark.unit
async def test_invalid_signature_marks_pending_failed(student, db_session):
    service = PaymentService(db_session)
    await service.create_pending_credit(student.id, 500, "o1")

    with pytest.raises(InvalidSignatureError):
        await _settle(service, "o1", signature="deadbeef")

    entry = await LedgerService(db_session).find_by_external_ref("o1")
    assert entry.status == TransactionStatus.FAILED
    assert await LedgerService(db_session).get_balance(student.id) == 0


@pytest.mark.unit
async def test_valid_callback_after_failure_is_rejected(student, db_session):
    service = PaymentService(db_session)
    await service.create_pending_credit(student.id, 500, "o1")
    with pytest.raises(InvalidSignatureError):
        await _settle(service, "o1", signature="deadbeef")

    with pytest.raises(PaymentFailedError) as exc_info:
        await _settle(service, "o1")
    assert exc_info.value.status_code == 409
    assert "already failed" in exc_info.value.message
    assert await LedgerService(db_session).get_balance(student.id) == 0


@pytest.mark.unit
async def test_invalid_signature_after_settlement_leaves_completed(student, db_session):
    service = PaymentService(db_session)
    await service.create_pending_credit(student.id, 500, "o1")
    await _settle(service, "o1")

    with pytest.raises(InvalidSignatureError):
        await _settle(service, "o1", signature="deadbeef")

    entry = await LedgerService(db_session).find_by_external_ref("o1")
    assert entry.status == TransactionStatus.COMPLETED
    assert await LedgerService(db_session).get_balance(student.id) == 500


@pytest.mark.unit
async def test_unknown_order_not_found(db_session):
    with pytest.raises(PaymentNotFoundError):
        await _settle(PaymentService(db_session), "missing")


@pytest.mark.unit
async def test_foreign_owner_cannot_touch_order(student, user_factory, db_session):
    stranger = await user_factory(name="Other Student")
    service = PaymentService(db_session)
    await service.create_pending_credit(student.id, 500, "o1")

    with pytest.raises(PaymentNotFoundError):
        await _settle(service, "o1", signature="00", owner_id=stranger.id)

    entry = await LedgerService(db_session).find_by_external_ref("o1")
    assert entry.status == TransactionStatus.PENDING

    settled = await _settle(service, "o1", owner_id=student.id)
    assert settled.status == TransactionStatus.COMPLETED
    assert await LedgerService(db_session).get_balance(student.id) == 500


# ============================================================================
# find_stale_pending
# ============================================================================

@pytest.mark.unit
async def test_find_stale_pending_returns_only_old_pending(student, db_session):
    service = PaymentService(db_session)
    old = await service.create_pending_credit(student.id, 100, "old")
    await service.create_pending_credit(student.id, 100, "fresh")
    settled = await service.create_pending_credit(student.id, 100, "settled")
    await _settle(service, "settled")

    long_ago = utcnow() - timedelta(hours=2)
    await db_session.execute(
        update(WalletTransaction)
        .where(WalletTransaction.id.in_([old.id, settled.id]))
        .values(created_at=long_ago)
    )
    await db_session.commit()

    stale = await service.find_stale_pending(timedelta(minutes=30))

    assert [e.external_ref for e in stale] == ["old"]
