"""
Metered Chat - Main FastAPI Application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.core.middleware import setup_middleware, setup_exception_handlers
from app.api.routes import router as api_router
from app.db.database import engine, Base
from app.realtime.fanout import RealtimeFanout

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


def _parse_allowed_origins(raw: str) -> list[str]:
    """Parse comma-separated CORS origins string into a clean list."""
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


_OPENAPI_TAGS = [
    {
        "name": "Sessions",
        "description": "Mentor sessions: open, start, end, cancel, no-show, metered messages.",
    },
    {"name": "Payments", "description": "Wallet top-ups: pending credit intents and gateway verification."},
    {"name": "Wallet", "description": "Balance and transaction history."},
    {"name": "Presence", "description": "Mentor online status."},
    {"name": "Realtime", "description": "Socket endpoint for live messages, typing and presence."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "Pay-per-message conversation engine between students and mentors. "
        "Every student message is charged per block against a prepaid wallet."
    ),
    openapi_tags=_OPENAPI_TAGS,
    openapi_url="/openapi.json",
)

# One fan-out per process; the Redis relay, when enabled, attaches at startup
app.state.fanout = RealtimeFanout()
app.state.fanout_relay = None

# Setup middleware (correlation ID, request logging)
setup_middleware(app)
setup_exception_handlers(app)

allowed_origins = _parse_allowed_origins(settings.ALLOWED_ORIGINS)

# Safe dev default to support local frontend development without opening CORS in production.
if not allowed_origins and settings.DEBUG:
    allowed_origins = [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-ID"],
    )

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables and the realtime relay on startup"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")

    if settings.FANOUT_REDIS_RELAY:
        from app.realtime.relay import create_relay

        app.state.fanout_relay = await create_relay(app.state.fanout)


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    if app.state.fanout_relay is not None:
        await app.state.fanout_relay.stop()
        app.state.fanout_relay = None
    await app.state.fanout.close()
    # dispose pooled DB connections
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="Liveness probe",
    description="The process is up and answering. External dependencies are not checked.",
    tags=["Health"],
)
async def health_check() -> dict[str, str | int]:
    """Liveness probe"""
    return {"status": "healthy", "connections": app.state.fanout.connection_count}
