"""
Tests for Session and Message API Endpoints
"""
import pytest
from httpx import AsyncClient

from app.db.models.mentor_session import SessionState
from app.db.models.user import User, UserRole
from app.domain.services.ledger_service import LedgerService
from tests.conftest import auth_headers


class TestSessionAPI:
    """Lifecycle endpoints"""

    @pytest.mark.integration
    async def test_create_session(self, test_client: AsyncClient, mentor: User, student: User):
        response = await test_client.post(
            "/api/sessions", json={"mentor_id": mentor.id}, headers=auth_headers(student)
        )

        assert response.status_code == 201
        data = response.json()
        assert data["mentor_id"] == mentor.id
        assert data["student_id"] == student.id
        assert data["state"] == "scheduled"
        assert data["rate_per_unit"] == 10
        assert data["accumulated_cost"] == 0

    @pytest.mark.integration
    async def test_create_session_requires_token(self, test_client: AsyncClient, mentor: User):
        response = await test_client.post("/api/sessions", json={"mentor_id": mentor.id})

        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"

    @pytest.mark.integration
    async def test_invalid_token_rejected(self, test_client: AsyncClient, mentor: User):
        response = await test_client.post(
            "/api/sessions",
            json={"mentor_id": mentor.id},
            headers={"Authorization": "Bearer not-a-jwt"},
        )
        assert response.status_code == 401

    @pytest.mark.integration
    async def test_create_with_unapproved_mentor_is_400(
        self, test_client: AsyncClient, student: User, user_factory
    ):
        plain_user = await user_factory(name="Not A Mentor")

        response = await test_client.post(
            "/api/sessions", json={"mentor_id": plain_user.id}, headers=auth_headers(student)
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "ERR_3002"

    @pytest.mark.integration
    async def test_create_with_non_positive_rate_is_422(
        self, test_client: AsyncClient, mentor: User, student: User
    ):
        response = await test_client.post(
            "/api/sessions",
            json={"mentor_id": mentor.id, "rate_per_unit": 0},
            headers=auth_headers(student),
        )
        assert response.status_code == 422

    @pytest.mark.integration
    async def test_full_lifecycle(self, test_client: AsyncClient, mentor: User, student: User):
        created = await test_client.post(
            "/api/sessions", json={"mentor_id": mentor.id}, headers=auth_headers(student)
        )
        session_id = created.json()["id"]

        started = await test_client.post(
            f"/api/sessions/{session_id}/start", headers=auth_headers(mentor)
        )
        assert started.status_code == 200
        assert started.json()["state"] == "ongoing"
        assert started.json()["started_at"] is not None

        ended = await test_client.post(
            f"/api/sessions/{session_id}/end", headers=auth_headers(student)
        )
        assert ended.status_code == 200
        assert ended.json()["state"] == "completed"

    @pytest.mark.integration
    async def test_student_cannot_start(
        self, test_client: AsyncClient, mentor: User, student: User, mentor_session_factory
    ):
        session = await mentor_session_factory(mentor.id, student.id)

        response = await test_client.post(
            f"/api/sessions/{session.id}/start", headers=auth_headers(student)
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "ERR_1005"

    @pytest.mark.integration
    async def test_illegal_transition_is_409(
        self, test_client: AsyncClient, mentor: User, student: User, mentor_session_factory
    ):
        session = await mentor_session_factory(mentor.id, student.id, state=SessionState.COMPLETED)

        response = await test_client.post(
            f"/api/sessions/{session.id}/cancel", headers=auth_headers(student)
        )

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "ERR_6003"
        assert error["details"]["current_state"] == "completed"

    @pytest.mark.integration
    async def test_no_show(
        self, test_client: AsyncClient, mentor: User, student: User, mentor_session_factory
    ):
        session = await mentor_session_factory(mentor.id, student.id)

        response = await test_client.post(
            f"/api/sessions/{session.id}/no-show", headers=auth_headers(mentor)
        )

        assert response.status_code == 200
        assert response.json()["state"] == "no_show"

    @pytest.mark.integration
    async def test_get_session_hidden_from_outsider(
        self, test_client: AsyncClient, mentor: User, student: User, user_factory, mentor_session_factory
    ):
        outsider = await user_factory(name="Outsider")
        session = await mentor_session_factory(mentor.id, student.id)

        own = await test_client.get(f"/api/sessions/{session.id}", headers=auth_headers(student))
        other = await test_client.get(f"/api/sessions/{session.id}", headers=auth_headers(outsider))

        assert own.status_code == 200
        assert other.status_code == 403

    @pytest.mark.integration
    async def test_unknown_session_is_404(self, test_client: AsyncClient, student: User):
        response = await test_client.get("/api/sessions/999999", headers=auth_headers(student))

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "ERR_6002"

    @pytest.mark.integration
    async def test_list_sessions_filters_by_state(
        self, test_client: AsyncClient, mentor: User, student: User, mentor_session_factory
    ):
        await mentor_session_factory(mentor.id, student.id)
        done = await mentor_session_factory(mentor.id, student.id, state=SessionState.COMPLETED)

        everything = await test_client.get("/api/sessions", headers=auth_headers(student))
        completed = await test_client.get(
            "/api/sessions", params={"state": "completed"}, headers=auth_headers(mentor)
        )

        assert len(everything.json()) == 2
        assert [s["id"] for s in completed.json()] == [done.id]

    @pytest.mark.integration
    async def test_only_students_open_sessions(
        self, test_client: AsyncClient, mentor: User, admin: User, user_factory
    ):
        other_mentor = await user_factory(name="Other Mentor", role=UserRole.MENTOR, rate_per_block=5)

        as_mentor = await test_client.post(
            "/api/sessions", json={"mentor_id": other_mentor.id}, headers=auth_headers(mentor)
        )
        as_admin = await test_client.post(
            "/api/sessions", json={"mentor_id": mentor.id}, headers=auth_headers(admin)
        )

        assert as_mentor.status_code == 403
        assert as_admin.status_code == 403


class TestFeedbackAPI:
    """Post-session rating"""

    @pytest.mark.integration
    async def test_student_rates_completed_session_once(
        self, test_client: AsyncClient, mentor: User, student: User, mentor_session_factory, db_session
    ):
        session = await mentor_session_factory(mentor.id, student.id, state=SessionState.COMPLETED)

        rated = await test_client.post(
            f"/api/sessions/{session.id}/feedback",
            json={"rating": 4, "feedback": "Clear explanations"},
            headers=auth_headers(student),
        )
        again = await test_client.post(
            f"/api/sessions/{session.id}/feedback",
            json={"rating": 1},
            headers=auth_headers(student),
        )

        assert rated.status_code == 200
        assert rated.json()["rating"] == 4
        assert rated.json()["feedback"] == "Clear explanations"
        assert rated.json()["rated_at"] is not None
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "ERR_6005"

        await db_session.refresh(mentor)
        assert mentor.rating_count == 1
        assert mentor.rating_average == 4

    @pytest.mark.integration
    async def test_rating_before_completion_is_409(
        self, test_client: AsyncClient, mentor: User, student: User, mentor_session_factory
    ):
        session = await mentor_session_factory(mentor.id, student.id, state=SessionState.ONGOING)

        response = await test_client.post(
            f"/api/sessions/{session.id}/feedback", json={"rating": 5}, headers=auth_headers(student)
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "ERR_6003"

    @pytest.mark.integration
    async def test_mentor_cannot_rate(
        self, test_client: AsyncClient, mentor: User, student: User, mentor_session_factory
    ):
        session = await mentor_session_factory(mentor.id, student.id, state=SessionState.COMPLETED)

        response = await test_client.post(
            f"/api/sessions/{session.id}/feedback", json={"rating": 5}, headers=auth_headers(mentor)
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "ERR_1005"

    @pytest.mark.integration
    async def test_rating_out_of_range_is_422(
        self, test_client: AsyncClient, mentor: User, student: User, mentor_session_factory
    ):
        session = await mentor_session_factory(mentor.id, student.id, state=SessionState.COMPLETED)

        response = await test_client.post(
            f"/api/sessions/{session.id}/feedback", json={"rating": 6}, headers=auth_headers(student)
        )

        assert response.status_code == 422


class TestMessageAPI:
    """Metered message endpoints"""

    @pytest.mark.integration
    async def test_student_text_is_charged(
        self, test_client: AsyncClient, mentor: User, student: User,
        wallet_factory, mentor_session_factory, db_session,
    ):
        await wallet_factory(student.id, balance=100)
        session = await mentor_session_factory(mentor.id, student.id, state=SessionState.ONGOING)

        response = await test_client.post(
            f"/api/sessions/{session.id}/messages",
            json={"kind": "text", "content": "hello"},
            headers=auth_headers(student),
        )

        assert response.status_code == 201
        data = response.json()
        assert data["kind"] == "text"
        assert data["content"] == "hello"
        assert data["cost"] == 10
        assert await LedgerService(db_session).get_balance(student.id) == 90

    @pytest.mark.integration
    async def test_attachment_is_charged_per_mebibyte(
        self, test_client: AsyncClient, mentor: User, student: User,
        wallet_factory, mentor_session_factory,
    ):
        await wallet_factory(student.id, balance=100)
        session = await mentor_session_factory(
            mentor.id, student.id, rate_per_unit=5, state=SessionState.ONGOING
        )

        response = await test_client.post(
            f"/api/sessions/{session.id}/messages",
            json={
                "kind": "attachment",
                "file_name": "notes.pdf",
                "byte_size": 2_621_440,
                "url": "https://files.example.com/notes.pdf",
                "mime_type": "application/pdf",
            },
            headers=auth_headers(student),
        )

        assert response.status_code == 201
        assert response.json()["cost"] == 15
        assert response.json()["file_name"] == "notes.pdf"

    @pytest.mark.integration
    async def test_insufficient_balance_is_402(
        self, test_client: AsyncClient, mentor: User, student: User,
        wallet_factory, mentor_session_factory,
    ):
        await wallet_factory(student.id, balance=5)
        session = await mentor_session_factory(mentor.id, student.id, state=SessionState.ONGOING)

        response = await test_client.post(
            f"/api/sessions/{session.id}/messages",
            json={"kind": "text", "content": "hello"},
            headers=auth_headers(student),
        )

        assert response.status_code == 402
        error = response.json()["error"]
        assert error["code"] == "ERR_4002"
        assert error["details"]["current_balance"] == 5
        assert error["details"]["required_amount"] == 10

        history = await test_client.get(
            f"/api/sessions/{session.id}/messages", headers=auth_headers(student)
        )
        assert history.json() == []

    @pytest.mark.integration
    async def test_message_on_completed_session_is_409(
        self, test_client: AsyncClient, mentor: User, student: User,
        wallet_factory, mentor_session_factory,
    ):
        await wallet_factory(student.id, balance=100)
        session = await mentor_session_factory(mentor.id, student.id, state=SessionState.COMPLETED)

        response = await test_client.post(
            f"/api/sessions/{session.id}/messages",
            json={"kind": "text", "content": "too late"},
            headers=auth_headers(student),
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "ERR_6004"

    @pytest.mark.integration
    async def test_unknown_payload_kind_is_422(
        self, test_client: AsyncClient, mentor: User, student: User, mentor_session_factory
    ):
        session = await mentor_session_factory(mentor.id, student.id, state=SessionState.ONGOING)

        response = await test_client.post(
            f"/api/sessions/{session.id}/messages",
            json={"kind": "sticker", "content": "?"},
            headers=auth_headers(student),
        )

        assert response.status_code == 422

    @pytest.mark.integration
    async def test_blank_text_is_400(
        self, test_client: AsyncClient, mentor: User, student: User, mentor_session_factory
    ):
        session = await mentor_session_factory(mentor.id, student.id, state=SessionState.ONGOING)

        response = await test_client.post(
            f"/api/sessions/{session.id}/messages",
            json={"kind": "text", "content": "   "},
            headers=auth_headers(student),
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "ERR_1001"

    @pytest.mark.integration
    async def test_message_is_pushed_to_subscribers(
        self, test_client: AsyncClient, fanout, fake_websocket_factory,
        mentor: User, student: User, mentor_session_factory,
    ):
        session = await mentor_session_factory(mentor.id, student.id, state=SessionState.ONGOING)
        listener = fanout.register(fake_websocket_factory(), mentor.id)
        fanout.subscribe(listener, session.id)

        response = await test_client.post(
            f"/api/sessions/{session.id}/messages",
            json={"kind": "text", "content": "from the mentor"},
            headers=auth_headers(mentor),
        )
        await listener.queue.join()

        assert response.status_code == 201
        assert response.json()["cost"] == 0
        assert listener.websocket.types() == ["NEW_MESSAGE"]
        assert listener.websocket.sent[0]["message"]["id"] == response.json()["id"]
        await fanout.close()

    @pytest.mark.integration
    async def test_refetch_after_id(
        self, test_client: AsyncClient, mentor: User, student: User,
        wallet_factory, mentor_session_factory,
    ):
        await wallet_factory(student.id, balance=100)
        session = await mentor_session_factory(mentor.id, student.id, state=SessionState.ONGOING)
        ids = []
        for text in ("one", "two", "three"):
            response = await test_client.post(
                f"/api/sessions/{session.id}/messages",
                json={"kind": "text", "content": text},
                headers=auth_headers(student),
            )
            ids.append(response.json()["id"])

        response = await test_client.get(
            f"/api/sessions/{session.id}/messages",
            params={"after_id": ids[0]},
            headers=auth_headers(mentor),
        )

        assert response.status_code == 200
        assert [m["content"] for m in response.json()] == ["two", "three"]
