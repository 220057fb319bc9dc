"""
Payment API Routes - wallet top-up intents and gateway verification
"""
from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_principal, require_admin
from app.core.auth import TokenPayload
from app.core.config import settings
from app.db.database import get_db
from app.db.models.wallet_transaction import TransactionKind, TransactionStatus
from app.domain.services.payment_service import PaymentService

router = APIRouter()


class CreditIntentRequest(BaseModel):
    """The order the client already created at the gateway"""
    amount: int = Field(..., gt=0)
    external_order_id: str = Field(..., min_length=1, max_length=100)


class VerifyPaymentRequest(BaseModel):
    external_order_id: str = Field(..., min_length=1, max_length=100)
    external_payment_id: str = Field(..., min_length=1, max_length=100)
    signature: str = Field(..., min_length=1, max_length=256)


class TransactionResponse(BaseModel):
    id: int
    user_id: int
    kind: TransactionKind
    amount: int
    resulting_balance: Optional[int] = None
    description: Optional[str] = None
    external_ref: Optional[str] = None
    external_payment_id: Optional[str] = None
    status: TransactionStatus
    created_at: datetime
    settled_at: Optional[datetime] = None

    class Config:
        from_attributes = True


@router.post(
    "/credit-intent",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a pending wallet top-up",
    description="One pending credit per gateway order id; repeating the same request returns the same row.",
)
async def create_credit_intent(
    body: CreditIntentRequest,
    principal: TokenPayload = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    service = PaymentService(db)
    return await service.create_pending_credit(principal.user_id, body.amount, body.external_order_id)


@router.post(
    "/verify",
    response_model=TransactionResponse,
    summary="Verify a gateway payment and credit the wallet",
    description=(
        "HMAC-SHA256 over 'order_id|payment_id' with the gateway secret. "
        "Only the owner of the order may confirm it; other callers get 404. "
        "Safe to retry: a settled order is returned unchanged."
    ),
)
async def verify_payment(
    body: VerifyPaymentRequest,
    principal: TokenPayload = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    service = PaymentService(db)
    return await service.verify_and_settle(
        body.external_order_id,
        body.external_payment_id,
        body.signature,
        settings.PAYMENT_GATEWAY_KEY_SECRET,
        owner_id=principal.user_id,
    )


@router.get(
    "/stale",
    response_model=List[TransactionResponse],
    summary="Pending credits that never settled (admin)",
)
async def list_stale_pending(
    older_than_minutes: int = Query(default=settings.PENDING_CREDIT_TIMEOUT_MINUTES, ge=1),
    _: TokenPayload = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    service = PaymentService(db)
    return await service.find_stale_pending(timedelta(minutes=older_than_minutes))
