"""
Realtime socket endpoint

Handshake: bearer token in the ``Authorization`` header or the ``token``
query parameter. An invalid token closes the socket with 1008 before accept.

Client frames:
    {"type": "SUBSCRIBE", "session_id": 1}
    {"type": "UNSUBSCRIBE", "session_id": 1}
    {"type": "TYPING", "session_id": 1, "is_typing": true}
    {"type": "PING"}
"""
import json
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core.auth import PrincipalRole, TokenPayload, extract_bearer_token, verify_token
from app.core.exceptions import AppException
from app.core.logging import bind_log_context, get_logger
from app.db.database import get_session_factory
from app.domain.services.presence_service import PresenceService
from app.domain.services.session_service import SessionService
from app.realtime import events
from app.realtime.fanout import Connection, RealtimeFanout

logger = get_logger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def realtime_socket(
    websocket: WebSocket,
    token: Optional[str] = Query(default=None),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    raw_token = extract_bearer_token(websocket.headers.get("authorization")) or token
    principal = verify_token(raw_token) if raw_token else None
    if principal is None:
        logger.warning("Socket rejected, invalid or missing token")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    fanout: RealtimeFanout = websocket.app.state.fanout
    await websocket.accept()
    connection = fanout.register(websocket, principal.user_id)
    connection.enqueue({
        "type": events.CONNECTION_SUCCESS,
        "user_id": principal.user_id,
        "role": principal.role.value,
        "connection_id": connection.id,
    })

    with bind_log_context(user_id=principal.user_id, connection_id=connection.id):
        try:
            while True:
                raw = await websocket.receive_text()
                await _handle_frame(raw, connection, fanout, session_factory)
        except WebSocketDisconnect:
            logger.info("Socket closed by client")
        finally:
            await fanout.unregister(connection)
            await _mark_mentor_offline(principal, fanout, session_factory)


async def _handle_frame(
    raw: str,
    connection: Connection,
    fanout: RealtimeFanout,
    session_factory: async_sessionmaker,
) -> None:
    try:
        frame = json.loads(raw)
    except ValueError:
        connection.enqueue(events.error_event("Frame is not valid JSON"))
        return
    if not isinstance(frame, dict):
        connection.enqueue(events.error_event("Frame must be a JSON object"))
        return

    frame_type = frame.get("type")
    if frame_type == events.PING:
        connection.enqueue({"type": events.PONG})
        return
    if frame_type not in events.CLIENT_FRAMES:
        connection.enqueue(events.error_event(f"Unknown frame type: {frame_type}"))
        return

    session_id = frame.get("session_id")
    if isinstance(session_id, bool) or not isinstance(session_id, int):
        connection.enqueue(events.error_event("session_id must be an integer"))
        return

    if frame_type == events.SUBSCRIBE:
        async with session_factory() as db:
            service = SessionService(db)
            try:
                session = await service.get(session_id)
                service.ensure_participant(session, connection.user_id)
            except AppException as exc:
                connection.enqueue(events.error_event(exc.message, exc.error_code.value))
                return
        fanout.subscribe(connection, session_id)
        connection.enqueue({"type": events.SUBSCRIBED, "session_id": session_id})

    elif frame_type == events.UNSUBSCRIBE:
        fanout.unsubscribe(connection, session_id)
        connection.enqueue({"type": events.UNSUBSCRIBED, "session_id": session_id})

    elif frame_type == events.TYPING:
        if session_id not in connection.session_ids:
            connection.enqueue(events.error_event("Subscribe to the session first"))
            return
        fanout.broadcast(
            session_id,
            events.typing_event(session_id, connection.user_id, bool(frame.get("is_typing", True))),
            exclude=connection,
        )


async def _mark_mentor_offline(
    principal: TokenPayload,
    fanout: RealtimeFanout,
    session_factory: async_sessionmaker,
) -> None:
    """A mentor whose last socket closed is no longer reachable"""
    if principal.role != PrincipalRole.MENTOR or fanout.user_connection_count(principal.user_id):
        return
    try:
        async with session_factory() as db:
            service = PresenceService(db, fanout=fanout)
            if await service.is_online(principal.user_id):
                await service.set_presence(principal.user_id, False)
    except Exception as exc:
        logger.error(
            "Failed to mark mentor offline after disconnect",
            extra_data={"mentor_id": principal.user_id, "error": str(exc)},
        )
