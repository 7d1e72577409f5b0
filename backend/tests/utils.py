"""Test helpers shared across relay tests."""
import asyncio

from starlette.websockets import WebSocketState

from homeserve.config import AppSettings, DatabaseSettings, JWTSecrets, RelaySettings, Secrets

TEST_SECRET = "test-secret-key"


def make_config(**relay_overrides) -> AppSettings:
    return AppSettings(
        database=DatabaseSettings(path=":memory:"),
        relay=RelaySettings(**relay_overrides),
        secrets=Secrets(jwt=JWTSecrets(secret_key=TEST_SECRET)),
    )


class FakeWebSocket:
    """Stand-in transport for LiveConnection tests.

    ``block=True`` makes ``send_json`` wait until ``release()`` is called,
    simulating a slow peer.
    """

    def __init__(self, block: bool = False) -> None:
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.sent = []
        self.closed_with = None
        self._gate = asyncio.Event()
        if not block:
            self._gate.set()

    def release(self) -> None:
        self._gate.set()

    async def send_json(self, data) -> None:
        await self._gate.wait()
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code
        self.application_state = WebSocketState.DISCONNECTED


class RecordingConnection:
    """Minimal connection that records payloads synchronously."""

    def __init__(self, name: str = "conn", open_: bool = True) -> None:
        self.connection_id = name
        self.user_id = None
        self.is_open = open_
        self.received = []

    def send(self, payload: dict) -> bool:
        if not self.is_open:
            return False
        self.received.append(payload)
        return True

    def of_type(self, kind: str):
        return [p for p in self.received if p["type"] == kind]


async def settle(rounds: int = 20) -> None:
    """Let pending tasks (writers, closers) run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def unread_count(db, conversation_id: str, receiver_id: str) -> int:
    """Unread messages addressed to ``receiver_id`` in one conversation."""
    rows = db.execute(
        "SELECT count(*) FROM messages WHERE conversation_id = ? AND receiver_id = ? AND NOT is_read",
        [conversation_id, receiver_id],
    )
    return rows[0][0]
