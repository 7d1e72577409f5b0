"""Per-connection protocol handling for the messaging relay.

Each WebSocket gets one ``RelaySession``. The session is a small state
machine:

    UNAUTHENTICATED --auth ok--> AUTHENTICATED --transport closed--> CLOSED

Only ``auth`` and ``ping`` are accepted before authentication. Any other
known event gets ``error{error: "Not authenticated"}`` and the connection
stays open. Unknown event types are ignored.

Protocol Message Types (inbound -> reply):
    - auth: {token} -> auth_success | auth_error
    - ping -> pong {timestamp}
    - get_conversations -> conversations
    - get_messages: {conversationId} -> messages
    - get_conversation: {otherUserId} -> messages (empty if none yet)
    - send_message: {receiverId, content} -> message_sent,
      plus new_message to every live connection of the receiver
    - start_conversation: {receiverId} -> conversation_started
    - get_users -> users
    - set_status: {isOnline} -> status_updated,
      plus user_status_change to every other user

Errors from the taxonomy in ``errors.py`` are turned into an ``error``
reply (``auth_error`` for ``AuthInvalid``) for this connection only.
"""
import json
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError as PydanticValidationError

from .errors import (
    AuthInvalid,
    NotAuthenticated,
    NotFound,
    RelayError,
    Transient,
    ValidationError,
)
from .registry import LiveConnection
from .relay import Relay
from .schemas import (
    EVENT_MODELS,
    PUBLIC_EVENTS,
    AuthEvent,
    EventType,
    GetConversationEvent,
    GetMessagesEvent,
    InboundEvent,
    OutboundType,
    SendMessageEvent,
    SetStatusEvent,
    StartConversationEvent,
    outbound,
)

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[None]]


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


def _describe(exc: PydanticValidationError) -> str:
    """First validation problem as a short human-readable sentence."""
    error = exc.errors()[0]
    message = error.get("msg", "Invalid value")
    if message.startswith("Value error, "):
        return message[len("Value error, "):]
    field = ".".join(str(part) for part in error.get("loc", ()))
    return f"{field}: {message}" if field else message


class RelaySession:
    """Protocol state for a single WebSocket connection."""

    def __init__(self, connection: LiveConnection, relay: Relay) -> None:
        self.connection = connection
        self.relay = relay
        self.state = SessionState.UNAUTHENTICATED
        self.user_id: Optional[str] = None
        self._opened_at = time.monotonic()

        self._handlers: Dict[EventType, Handler] = {
            EventType.AUTH: self._on_auth,
            EventType.PING: self._on_ping,
            EventType.GET_CONVERSATIONS: self._on_get_conversations,
            EventType.GET_MESSAGES: self._on_get_messages,
            EventType.GET_CONVERSATION: self._on_get_conversation,
            EventType.SEND_MESSAGE: self._on_send_message,
            EventType.START_CONVERSATION: self._on_start_conversation,
            EventType.GET_USERS: self._on_get_users,
            EventType.SET_STATUS: self._on_set_status,
        }
        missing = set(EventType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for event types: {sorted(m.value for m in missing)}")

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    async def open(self) -> None:
        """Start the outbound writer and greet the client."""
        self.connection.start()
        self._reply(OutboundType.WELCOME, message=self.relay.settings.welcome_message)

    def auth_time_remaining(self) -> Optional[float]:
        """Seconds left to authenticate, or None when no deadline applies."""
        timeout = self.relay.settings.auth_timeout_seconds
        if timeout is None or self.state is not SessionState.UNAUTHENTICATED:
            return None
        return max(0.0, timeout - (time.monotonic() - self._opened_at))

    async def close(self) -> None:
        """Unregister and stop the writer. Safe to call more than once."""
        if self.state is SessionState.CLOSED:
            return
        was_authenticated = self.state is SessionState.AUTHENTICATED
        self.state = SessionState.CLOSED
        await self.connection.close()
        if was_authenticated and self.user_id:
            await self.relay.presence.disconnect(self.user_id, self.connection)
        logger.info(
            "[WS] Connection %s closed (user=%s)", self.connection.connection_id, self.user_id
        )

    # -----------------------------------------------------------------------
    # Dispatch
    # -----------------------------------------------------------------------

    async def handle_frame(self, raw: str) -> None:
        """Decode one inbound frame and run its handler."""
        try:
            data = json.loads(raw)
        except ValueError:
            self._reply_error(ValidationError("Invalid message format"))
            return
        if not isinstance(data, dict):
            self._reply_error(ValidationError("Invalid message format"))
            return

        try:
            event_type = EventType(data.get("type"))
        except ValueError:
            logger.debug("[WS] Ignoring unknown event type %r", data.get("type"))
            return

        logger.debug("[WS] %s received %s", self.connection.connection_id, event_type.value)
        try:
            if event_type not in PUBLIC_EVENTS and self.state is not SessionState.AUTHENTICATED:
                raise NotAuthenticated("Not authenticated")
            event = self._parse(event_type, data)
            await self._handlers[event_type](event)
        except RelayError as exc:
            self._reply_error(exc)
        except Exception:
            logger.exception("[WS] Unhandled error while processing %s", event_type.value)
            self._reply_error(Transient("Internal error"))

    @staticmethod
    def _parse(event_type: EventType, data: dict) -> InboundEvent:
        try:
            return EVENT_MODELS[event_type].model_validate(data)
        except PydanticValidationError as exc:
            if event_type is EventType.AUTH:
                raise AuthInvalid("Invalid token") from exc
            raise ValidationError(_describe(exc)) from exc

    # -----------------------------------------------------------------------
    # Handlers
    # -----------------------------------------------------------------------

    async def _on_auth(self, event: AuthEvent) -> None:
        identity = self.relay.tokens.verify(event.token)

        if self.state is SessionState.AUTHENTICATED:
            if identity.user_id != self.user_id:
                raise AuthInvalid("Already authenticated")
            self._reply(OutboundType.AUTH_SUCCESS, userId=self.user_id)
            return

        if not await self._call(self.relay.users.exists, identity.user_id):
            raise AuthInvalid("User not found")

        self.user_id = identity.user_id
        self.connection.user_id = identity.user_id
        self.state = SessionState.AUTHENTICATED
        logger.info(
            "[WS] Connection %s authenticated as %s", self.connection.connection_id, self.user_id
        )

        presence_error: Optional[RelayError] = None
        try:
            await self.relay.presence.connect(self.user_id, self.connection)
        except Transient as exc:
            presence_error = exc

        self._reply(OutboundType.AUTH_SUCCESS, userId=self.user_id)
        if presence_error is not None:
            self._reply_error(presence_error)

    async def _on_ping(self, event: InboundEvent) -> None:
        self._reply(OutboundType.PONG, timestamp=int(time.time() * 1000))

    async def _on_get_conversations(self, event: InboundEvent) -> None:
        conversations = await self._call(self.relay.store.list_conversations, self.user_id)
        self._reply(
            OutboundType.CONVERSATIONS,
            conversations=[c.model_dump(mode="json") for c in conversations],
        )

    async def _on_get_messages(self, event: GetMessagesEvent) -> None:
        messages = await self._call(
            self.relay.store.list_messages, event.conversationId, self.user_id
        )
        self._reply(
            OutboundType.MESSAGES,
            conversationId=event.conversationId,
            messages=[m.model_dump(mode="json") for m in messages],
        )

    async def _on_get_conversation(self, event: GetConversationEvent) -> None:
        conversation = await self._call(
            self.relay.store.find_conversation_between, self.user_id, event.otherUserId
        )
        if conversation is None:
            self._reply(OutboundType.MESSAGES, conversationId=None, messages=[])
            return

        messages = await self._call(self.relay.store.list_messages, conversation.id, self.user_id)
        self._reply(
            OutboundType.MESSAGES,
            conversationId=conversation.id,
            messages=[m.model_dump(mode="json") for m in messages],
        )

    async def _on_send_message(self, event: SendMessageEvent) -> None:
        await self._require_peer(event.receiverId)
        store = self.relay.store
        conversation = await self._call(
            store.find_or_create_conversation, self.user_id, event.receiverId
        )
        message = await self._call(
            store.append_message, conversation.id, self.user_id, event.receiverId, event.content
        )
        message_data = message.model_dump(mode="json")

        self._reply(
            OutboundType.MESSAGE_SENT,
            message=message_data,
            conversationId=conversation.id,
        )
        delivered = self.relay.router.send_to_user(
            event.receiverId,
            outbound(
                OutboundType.NEW_MESSAGE,
                message=message_data,
                conversationId=conversation.id,
            ),
        )
        logger.info(
            "[WS] Message %s from %s to %s (%d live connection(s))",
            message.id, self.user_id, event.receiverId, delivered,
        )

    async def _on_start_conversation(self, event: StartConversationEvent) -> None:
        await self._require_peer(event.receiverId)
        conversation = await self._call(
            self.relay.store.find_or_create_conversation, self.user_id, event.receiverId
        )
        self._reply(
            OutboundType.CONVERSATION_STARTED,
            conversation=conversation.model_dump(mode="json"),
        )

    async def _on_get_users(self, event: InboundEvent) -> None:
        users = await self._call(self.relay.users.list_public_except, self.user_id)
        self._reply(OutboundType.USERS, users=[u.model_dump(mode="json") for u in users])

    async def _on_set_status(self, event: SetStatusEvent) -> None:
        state = await self.relay.presence.set_manual_status(self.user_id, event.isOnline)
        self._reply(
            OutboundType.STATUS_UPDATED,
            userId=self.user_id,
            isOnline=state.isOnline,
            lastSeen=state.lastSeen.isoformat(),
        )

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    async def _require_peer(self, receiver_id: str) -> None:
        if receiver_id == self.user_id:
            raise ValidationError("Cannot start a conversation with yourself")
        if not await self._call(self.relay.users.exists, receiver_id):
            raise NotFound("Receiver not found")

    @staticmethod
    async def _call(fn: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking store call without stalling other connections."""
        return await run_in_threadpool(fn, *args)

    def _reply(self, kind: OutboundType, **fields: Any) -> None:
        self.relay.router.send(self.connection, outbound(kind, **fields))

    def _reply_error(self, exc: RelayError) -> None:
        if isinstance(exc, AuthInvalid):
            self._reply(OutboundType.AUTH_ERROR, error=exc.message, code=exc.code)
            return
        logger.info(
            "[WS] %s -> error %s: %s", self.connection.connection_id, exc.code, exc.message
        )
        self._reply(OutboundType.ERROR, error=exc.message, code=exc.code)
