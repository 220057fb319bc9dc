"""
Realtime Fan-out - pushes events to live socket connections

Each connection owns a bounded outbound queue drained by its own sender task.
``broadcast`` only enqueues, so a slow or dead socket never blocks the caller
(e.g. the metering request that just committed a message). When a queue is
full the event is dropped for that connection; clients re-fetch history on
reconnect, so delivery is best effort by contract.

The fan-out is created once at startup and kept on ``app.state.fanout``.
"""
import asyncio
import uuid
from contextlib import suppress

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)


class Connection:
    """One accepted socket, the user behind it and its subscriptions"""

    def __init__(self, websocket, user_id: int, queue_size: int):
        self.id = uuid.uuid4().hex
        self.websocket = websocket
        self.user_id = user_id
        self.session_ids: set[int] = set()
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.dropped = 0
        self._sender: asyncio.Task | None = None

    @property
    def is_alive(self) -> bool:
        return self._sender is not None and not self._sender.done()

    def start(self) -> None:
        self._sender = asyncio.create_task(self._send_loop(), name=f"fanout-sender-{self.id}")

    def enqueue(self, event: dict) -> bool:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Outbound queue full, event dropped",
                extra_data={
                    "connection_id": self.id,
                    "user_id": self.user_id,
                    "event_type": event.get("type"),
                    "dropped_total": self.dropped,
                },
            )
            return False
        return True

    async def _send_loop(self) -> None:
        while True:
            event = await self.queue.get()
            try:
                await self.websocket.send_json(event)
            except Exception as exc:
                # socket is gone; the receive loop will unregister us
                logger.info(
                    "Socket send failed, sender stopped",
                    extra_data={"connection_id": self.id, "user_id": self.user_id, "error": str(exc)},
                )
                return
            finally:
                self.queue.task_done()

    async def close(self) -> None:
        if self._sender is not None and not self._sender.done():
            self._sender.cancel()
            with suppress(asyncio.CancelledError):
                await self._sender


class RealtimeFanout:
    """Connection registry plus per-session subscriptions"""

    def __init__(self, queue_size: int | None = None):
        self.queue_size = queue_size or settings.FANOUT_QUEUE_SIZE
        self._connections: dict[str, Connection] = {}
        self._subscribers: dict[int, set[str]] = {}
        self.relay = None

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def register(self, websocket, user_id: int) -> Connection:
        """Track an already accepted socket and start its sender task"""
        connection = Connection(websocket, user_id, self.queue_size)
        self._connections[connection.id] = connection
        connection.start()
        logger.info(
            "Socket connected",
            extra_data={"connection_id": connection.id, "user_id": user_id, "connections": self.connection_count},
        )
        return connection

    async def unregister(self, connection: Connection) -> None:
        self._connections.pop(connection.id, None)
        for session_id in list(connection.session_ids):
            self.unsubscribe(connection, session_id)
        await connection.close()
        logger.info(
            "Socket disconnected",
            extra_data={"connection_id": connection.id, "user_id": connection.user_id},
        )

    def subscribe(self, connection: Connection, session_id: int) -> None:
        connection.session_ids.add(session_id)
        self._subscribers.setdefault(session_id, set()).add(connection.id)

    def unsubscribe(self, connection: Connection, session_id: int) -> None:
        connection.session_ids.discard(session_id)
        subscribers = self._subscribers.get(session_id)
        if subscribers is not None:
            subscribers.discard(connection.id)
            if not subscribers:
                del self._subscribers[session_id]

    def subscriber_count(self, session_id: int) -> int:
        return len(self._subscribers.get(session_id, ()))

    def user_connection_count(self, user_id: int) -> int:
        return sum(1 for c in self._connections.values() if c.user_id == user_id)

    def broadcast(self, session_id: int, event: dict, exclude: Connection | None = None) -> int:
        """Queue ``event`` for every connection subscribed to the session.

        Returns how many local connections accepted it.
        """
        exclude_id = exclude.id if exclude is not None else None
        delivered = self.deliver_to_session(session_id, event, exclude_id=exclude_id)
        if self.relay is not None:
            self.relay.publish(event, session_id=session_id)
        return delivered

    def broadcast_all(self, event: dict) -> int:
        """Queue ``event`` for every live connection (presence changes)"""
        delivered = self.deliver_to_all(event)
        if self.relay is not None:
            self.relay.publish(event)
        return delivered

    def deliver_to_session(self, session_id: int, event: dict, exclude_id: str | None = None) -> int:
        delivered = 0
        for connection_id in list(self._subscribers.get(session_id, ())):
            if connection_id == exclude_id:
                continue
            connection = self._connections.get(connection_id)
            if connection is not None and connection.enqueue(event):
                delivered += 1
        return delivered

    def deliver_to_all(self, event: dict) -> int:
        return sum(1 for connection in list(self._connections.values()) if connection.enqueue(event))

    async def close(self) -> None:
        for connection in list(self._connections.values()):
            await self.unregister(connection)
