"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- HTTP test client with the database and fan-out overridden
- Test data factories (users, wallets, sessions)
- Fake sockets for fan-out tests
"""
# JWT_SECRET_KEY must exist before app import; the settings validator requires it when DEBUG=False
import os
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("PAYMENT_GATEWAY_KEY_SECRET", "test-gateway-secret")

import asyncio

import pytest
from typing import AsyncGenerator
from unittest.mock import patch

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool, StaticPool

from app.core.auth import create_access_token
from app.core.config import settings
from app.core.locks import wallet_locks
from app.db.database import Base, get_db, get_session_factory
from app.db.models.mentor_session import MentorSession, SessionState
from app.db.models.user import User, UserRole, ApprovalStatus
from app.db.models.user_wallet import UserWallet
from app.domain.services.ledger_service import LedgerService
from app.main import app
from app.realtime.fanout import RealtimeFanout


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_GATEWAY_SECRET = "test-gateway-secret"

# No custom event_loop fixture: pytest-asyncio handles it with
# asyncio_mode=auto and asyncio_default_fixture_loop_scope=function


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_maker(async_engine) -> async_sessionmaker:
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
async def file_engine(tmp_path):
    """File-backed SQLite with a connection per session, so concurrent work really interleaves"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'race.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def fanout():
    """Fresh fan-out installed on the app for the duration of a test"""
    previous = app.state.fanout
    app.state.fanout = RealtimeFanout(queue_size=settings.FANOUT_QUEUE_SIZE)
    yield app.state.fanout
    app.state.fanout = previous


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, session_maker, fanout):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_maker

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Authentication helpers
# ============================================================================

def token_for(user: User) -> str:
    return create_access_token(user.id, user.role.value)


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {token_for(user)}"}


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def user_factory(db_session: AsyncSession):
    """Factory for creating test users"""
    async def _create_user(
        name: str = "Test User",
        role: UserRole = UserRole.STUDENT,
        is_active: bool = True,
        approval_status: ApprovalStatus | None = None,
        rate_per_block: int | None = None,
    ) -> User:
        if role == UserRole.MENTOR and approval_status is None:
            approval_status = ApprovalStatus.APPROVED
        user = User(
            name=name,
            role=role,
            is_active=is_active,
            approval_status=approval_status,
            rate_per_block=rate_per_block,
        )
        db_session.add(user)
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _create_user


@pytest.fixture
def wallet_factory(db_session: AsyncSession):
    """Factory for funded wallets; funds go through the ledger so balance == ledger sum"""
    async def _create_wallet(user_id: int, balance: int = 0) -> UserWallet:
        ledger = LedgerService(db_session)
        if balance > 0:
            await ledger.credit(user_id, balance, "Test top-up")
        else:
            await ledger.get_or_create_wallet(user_id)
        await db_session.commit()
        return await ledger.get_or_create_wallet(user_id)

    return _create_wallet


@pytest.fixture
def mentor_session_factory(db_session: AsyncSession):
    """Factory for sessions in any state, bypassing the lifecycle checks"""
    async def _create_session(
        mentor_id: int,
        student_id: int,
        rate_per_unit: int = 10,
        state: SessionState = SessionState.SCHEDULED,
    ) -> MentorSession:
        session = MentorSession(
            mentor_id=mentor_id,
            student_id=student_id,
            rate_per_unit=rate_per_unit,
            state=state,
            accumulated_cost=0,
        )
        db_session.add(session)
        await db_session.commit()
        await db_session.refresh(session)
        return session

    return _create_session


# ============================================================================
# Sample Test Data
# ============================================================================

@pytest.fixture
async def student(user_factory) -> User:
    return await user_factory(name="Sample Student", role=UserRole.STUDENT)


@pytest.fixture
async def mentor(user_factory) -> User:
    return await user_factory(name="Sample Mentor", role=UserRole.MENTOR, rate_per_block=10)


@pytest.fixture
async def admin(user_factory) -> User:
    return await user_factory(name="Sample Admin", role=UserRole.ADMIN)


# ============================================================================
# Fake sockets
# ============================================================================

class FakeWebSocket:
    """Records what the fan-out sends; optionally fails or stalls on send"""

    def __init__(self, fail: bool = False, stall: bool = False) -> None:
        self.sent: list[dict] = []
        self.fail = fail
        self._gate = asyncio.Event()
        if not stall:
            self._gate.set()

    async def send_json(self, data: dict) -> None:
        await self._gate.wait()
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    def release(self) -> None:
        self._gate.set()

    def types(self) -> list[str]:
        return [event["type"] for event in self.sent]


@pytest.fixture
def fake_websocket_factory():
    return FakeWebSocket


# ============================================================================
# Global state resets
# ============================================================================

@pytest.fixture(autouse=True)
def reset_wallet_locks():
    """Locks are bound to the loop that first contends them; never share across tests"""
    wallet_locks.reset()
    yield
    wallet_locks.reset()


_TEST_JWT_SECRET = "test-jwt-secret-key-for-testing-only-do-not-use-in-production"


@pytest.fixture(autouse=True)
def set_test_secrets():
    """Pins JWT and gateway secrets for every test"""
    with patch.object(settings, "JWT_SECRET_KEY", _TEST_JWT_SECRET), \
         patch.object(settings, "JWT_ALGORITHM", "HS256"), \
         patch.object(settings, "JWT_ACCESS_TOKEN_EXPIRE_MINUTES", 480), \
         patch.object(settings, "PAYMENT_GATEWAY_KEY_SECRET", TEST_GATEWAY_SECRET), \
         patch.object(settings, "BILL_WHILE_OFFLINE", True):
        yield
