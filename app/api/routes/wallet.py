"""
Wallet API Routes
"""
from typing import List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_principal
from app.api.routes.payments import TransactionResponse
from app.core.auth import TokenPayload
from app.db.database import get_db
from app.domain.services.ledger_service import LedgerService

router = APIRouter()


class BalanceResponse(BaseModel):
    user_id: int
    balance: int


@router.get(
    "/balance",
    response_model=BalanceResponse,
    summary="Current wallet balance",
    description="Smallest currency unit. A user who never topped up has 0.",
)
async def get_balance(
    principal: TokenPayload = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """Get current balance for the caller"""
    balance = await LedgerService(db).get_balance(principal.user_id)
    return {"user_id": principal.user_id, "balance": balance}


@router.get(
    "/transactions",
    response_model=List[TransactionResponse],
    summary="Wallet transaction history",
    description="Most recent first, paginated.",
)
async def get_transaction_history(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    principal: TokenPayload = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """Get transaction history for the caller"""
    return await LedgerService(db).history(principal.user_id, page=page, limit=limit)
