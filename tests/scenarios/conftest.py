"""
Fixtures and helpers for end-to-end scenario tests.

Provides:
- short request helpers (top-up, open session, send message)
- DB assertions (wallet balance, ledger sum, stored messages)
"""
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.session_message import SessionMessage
from app.db.models.user import User
from app.domain.services.ledger_service import LedgerService
from app.domain.services.payment_service import compute_signature
from tests.conftest import TEST_GATEWAY_SECRET, auth_headers


# ============================================================================
# Request helpers
# ============================================================================

async def top_up(client, user: User, amount: int, order_id: str, payment_id: str = "pay_1") -> dict:
    """Register the pending credit, then deliver the gateway callback"""
    intent = await client.post(
        "/api/payments/credit-intent",
        json={"amount": amount, "external_order_id": order_id},
        headers=auth_headers(user),
    )
    assert intent.status_code == 201, intent.text
    return await verify(client, user, order_id, payment_id)


async def verify(client, user: User, order_id: str, payment_id: str = "pay_1") -> dict:
    """Relay the gateway confirmation as the logged-in owner"""
    response = await client.post(
        "/api/payments/verify",
        json={
            "external_order_id": order_id,
            "external_payment_id": payment_id,
            "signature": compute_signature(order_id, payment_id, TEST_GATEWAY_SECRET),
        },
        headers=auth_headers(user),
    )
    assert response.status_code == 200, response.text
    return response.json()


async def open_session(client, student: User, mentor: User, rate: int | None = None) -> dict:
    body = {"mentor_id": mentor.id}
    if rate is not None:
        body["rate_per_unit"] = rate
    created = await client.post("/api/sessions", json=body, headers=auth_headers(student))
    assert created.status_code == 201, created.text
    started = await client.post(
        f"/api/sessions/{created.json()['id']}/start", headers=auth_headers(mentor)
    )
    assert started.status_code == 200, started.text
    return started.json()


async def send_text(client, session_id: int, user: User, content: str):
    return await client.post(
        f"/api/sessions/{session_id}/messages",
        json={"kind": "text", "content": content},
        headers=auth_headers(user),
    )


async def send_file(client, session_id: int, user: User, byte_size: int, file_name: str = "file.bin"):
    return await client.post(
        f"/api/sessions/{session_id}/messages",
        json={
            "kind": "attachment",
            "file_name": file_name,
            "byte_size": byte_size,
            "url": f"https://files.example.com/{file_name}",
            "mime_type": "application/octet-stream",
        },
        headers=auth_headers(user),
    )


# ============================================================================
# DB assertions
# ============================================================================

async def assert_wallet_balance(db: AsyncSession, user_id: int, expected: int) -> None:
    ledger = LedgerService(db)
    balance = await ledger.get_balance(user_id)
    assert balance == expected, f"balance {balance} != {expected}"
    assert await ledger.ledger_sum(user_id) == balance


async def assert_message_count(db: AsyncSession, session_id: int, expected: int) -> None:
    count = await db.scalar(
        select(func.count()).select_from(SessionMessage).where(SessionMessage.session_id == session_id)
    )
    assert count == expected, f"{count} messages stored, expected {expected}"
