"""Live connection tracking for the messaging relay.

This module owns the in-memory view of who is reachable right now:

    - ``LiveConnection`` wraps one WebSocket with a bounded outbound queue
      drained by its own writer task, so pushing an event to a peer never
      waits on that peer's socket.
    - ``ConnectionRegistry`` maps a user id to the set of that user's open
      connections (several tabs or devices per user are allowed).

Overflow Policy:
    When a connection's outbound queue is full, ``overflow_policy`` decides:
        - ``close``: the connection is closed with code 1013 (try again
          later); the normal disconnect path then cleans it up.
        - ``drop_newest``: the new payload is discarded.
        - ``drop_oldest``: the oldest queued payload is discarded.

Thread Safety:
    Designed for a single asyncio event loop. Mutations that must be
    combined with a presence transition are serialized per user through
    ``ConnectionRegistry.lock_for()``.
"""
import asyncio
import logging
import uuid
import zlib
from typing import Dict, List, Optional, Set

from fastapi import WebSocket
from starlette.websockets import WebSocketState

logger = logging.getLogger(__name__)

# Close code sent to a connection that cannot keep up with its queue.
OVERFLOW_CLOSE_CODE = 1013

# Number of lock shards used to serialize per-user registry transitions.
LOCK_SHARDS = 64

OVERFLOW_POLICIES = ("close", "drop_newest", "drop_oldest")


class LiveConnection:
    """One open WebSocket plus its outbound queue.

    Attributes:
        connection_id: Opaque id used in logs.
        user_id: Authenticated user, None until ``auth`` succeeds.
        websocket: Transport handle.
        dropped: Number of payloads discarded by the overflow policy.
    """

    def __init__(
        self,
        websocket: WebSocket,
        queue_size: int = 64,
        overflow_policy: str = "close",
    ) -> None:
        if overflow_policy not in OVERFLOW_POLICIES:
            raise ValueError(f"Unknown overflow policy: {overflow_policy}")
        self.connection_id = uuid.uuid4().hex[:12]
        self.user_id: Optional[str] = None
        self.websocket = websocket
        self.dropped = 0
        self._policy = overflow_policy
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._closed = False
        self._writer: Optional[asyncio.Task] = None
        self._closer: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        return f"<LiveConnection {self.connection_id} user={self.user_id}>"

    @property
    def is_open(self) -> bool:
        """True while payloads can still be delivered to this connection."""
        if self._closed:
            return False
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    def start(self) -> None:
        """Start the writer task. Must run inside the event loop."""
        if self._writer is None:
            self._writer = asyncio.create_task(
                self._drain(), name=f"relay-writer-{self.connection_id}"
            )

    def send(self, payload: dict) -> bool:
        """Queue a payload without waiting.

        Returns:
            True if the payload was queued, False if it was dropped or the
            connection is closed.
        """
        if not self.is_open:
            return False
        try:
            self._queue.put_nowait(payload)
            return True
        except asyncio.QueueFull:
            return self._overflow(payload)

    def _overflow(self, payload: dict) -> bool:
        if self._policy == "drop_newest":
            self.dropped += 1
            logger.warning(
                "[Registry] Queue full for %s, dropped %s", self, payload.get("type")
            )
            return False

        if self._policy == "drop_oldest":
            oldest = self._queue.get_nowait()
            self._queue.put_nowait(payload)
            self.dropped += 1
            logger.warning(
                "[Registry] Queue full for %s, dropped oldest %s", self, oldest.get("type")
            )
            return True

        logger.warning("[Registry] Queue full for %s, closing slow connection", self)
        self._closed = True
        self._closer = asyncio.create_task(self._close_transport(OVERFLOW_CLOSE_CODE))
        return False

    async def _drain(self) -> None:
        while True:
            payload = await self._queue.get()
            try:
                await self.websocket.send_json(payload)
            except Exception as e:
                logger.debug(f"[Registry] Send failed on {self}: {e}")
                self._closed = True
                return

    async def _close_transport(self, code: int) -> None:
        if self._writer is not None:
            self._writer.cancel()
        try:
            if self.websocket.application_state == WebSocketState.CONNECTED:
                await self.websocket.close(code=code)
        except Exception as e:
            logger.debug(f"[Registry] Close failed on {self}: {e}")

    async def close(self) -> None:
        """Stop the writer task; queued payloads are discarded."""
        self._closed = True
        if self._writer is not None and not self._writer.done():
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
        if self._closer is not None and not self._closer.done():
            await self._closer


class ConnectionRegistry:
    """Maps user ids to their sets of live connections.

    Owned by the application (created in the lifespan) and injected into
    the dispatcher, presence tracker and broadcast router.
    """

    def __init__(self, lock_shards: int = LOCK_SHARDS) -> None:
        # user_id -> set of live connections
        self._connections: Dict[str, Set[LiveConnection]] = {}
        self._locks = [asyncio.Lock() for _ in range(lock_shards)]

    def lock_for(self, user_id: str) -> asyncio.Lock:
        """Lock serializing register/unregister + presence for ``user_id``."""
        shard = zlib.crc32(user_id.encode("utf-8")) % len(self._locks)
        return self._locks[shard]

    def register(self, user_id: str, connection: LiveConnection) -> bool:
        """Add a connection for ``user_id``.

        Returns:
            True if this is the user's first live connection.
        """
        sessions = self._connections.setdefault(user_id, set())
        first = not sessions
        sessions.add(connection)
        logger.info(
            "[Registry] Registered %s (user %s now has %d session(s))",
            connection.connection_id, user_id, len(sessions),
        )
        return first

    def unregister(self, user_id: str, connection: LiveConnection) -> bool:
        """Remove a connection.

        Returns:
            True if the user's set became empty (the user is now fully
            offline); False otherwise, including when the connection was
            not registered.
        """
        sessions = self._connections.get(user_id)
        if not sessions or connection not in sessions:
            return False
        sessions.discard(connection)
        logger.info(
            "[Registry] Unregistered %s (user %s has %d session(s) left)",
            connection.connection_id, user_id, len(sessions),
        )
        if sessions:
            return False
        del self._connections[user_id]
        return True

    def connections_for(self, user_id: str) -> List[LiveConnection]:
        """Open connections of ``user_id`` (possibly empty)."""
        return [c for c in self._connections.get(user_id, ()) if c.is_open]

    def user_ids(self) -> List[str]:
        return list(self._connections)

    def session_count(self, user_id: str) -> int:
        return len(self._connections.get(user_id, ()))
