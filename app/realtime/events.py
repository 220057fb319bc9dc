"""
Realtime event frames

Every frame sent to a client is a JSON object ``{"type": ..., ...}``.
"""
from app.db.models.mentor_presence import MentorPresence
from app.db.models.session_message import SessionMessage

# server -> client
CONNECTION_SUCCESS = "CONNECTION_SUCCESS"
NEW_MESSAGE = "NEW_MESSAGE"
PRESENCE = "PRESENCE"
TYPING = "TYPING"
SUBSCRIBED = "SUBSCRIBED"
UNSUBSCRIBED = "UNSUBSCRIBED"
PONG = "PONG"
ERROR = "ERROR"

# client -> server
SUBSCRIBE = "SUBSCRIBE"
UNSUBSCRIBE = "UNSUBSCRIBE"
PING = "PING"

CLIENT_FRAMES = frozenset({SUBSCRIBE, UNSUBSCRIBE, TYPING, PING})


def _iso(value):
    return value.isoformat() if value else None


def message_to_dict(message: SessionMessage) -> dict:
    data = {
        "id": message.id,
        "session_id": message.session_id,
        "sender_id": message.sender_id,
        "kind": message.kind.value,
        "cost": message.cost,
        "created_at": _iso(message.created_at),
    }
    if message.content is not None:
        data["content"] = message.content
    else:
        data.update(
            file_name=message.file_name,
            byte_size=message.byte_size,
            url=message.url,
            mime_type=message.mime_type,
        )
    return data


def new_message_event(message: SessionMessage) -> dict:
    return {
        "type": NEW_MESSAGE,
        "session_id": message.session_id,
        "message": message_to_dict(message),
    }


def presence_event(presence: MentorPresence) -> dict:
    return {
        "type": PRESENCE,
        "mentor_id": presence.mentor_id,
        "is_online": presence.is_online,
        "last_seen_at": _iso(presence.last_seen_at),
    }


def typing_event(session_id: int, user_id: int, is_typing: bool) -> dict:
    return {
        "type": TYPING,
        "session_id": session_id,
        "user_id": user_id,
        "is_typing": is_typing,
    }


def error_event(message: str, code: str | None = None) -> dict:
    return {"type": ERROR, "code": code, "message": message}
