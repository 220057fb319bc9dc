"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.sessions import router as sessions_router
from app.api.routes.payments import router as payments_router
from app.api.routes.wallet import router as wallet_router
from app.api.routes.presence import router as presence_router
from app.api.routes.ws import router as ws_router

router = APIRouter()

router.include_router(sessions_router, prefix="/sessions", tags=["Sessions"])
router.include_router(payments_router, prefix="/payments", tags=["Payments"])
router.include_router(wallet_router, prefix="/wallet", tags=["Wallet"])
router.include_router(presence_router, prefix="/presence", tags=["Presence"])
router.include_router(ws_router, tags=["Realtime"])
