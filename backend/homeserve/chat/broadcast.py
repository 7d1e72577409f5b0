"""Fan-out of relay events to live connections.

Delivery is fire-and-forget: payloads are queued on each target
connection (see ``LiveConnection.send``) and written by that connection's
own writer task. Closed connections are skipped without error.
"""
import logging

from .registry import ConnectionRegistry, LiveConnection

logger = logging.getLogger(__name__)


class BroadcastRouter:
    """Routes payloads to one connection, one user, or every other user."""

    def __init__(self, registry: ConnectionRegistry) -> None:
        self._registry = registry

    def send(self, connection: LiveConnection, payload: dict) -> bool:
        """Queue a payload for a single connection."""
        return connection.send(payload)

    def send_to_user(self, user_id: str, payload: dict) -> int:
        """Queue ``payload`` on every open connection of ``user_id``.

        Returns:
            Number of connections the payload was queued on.
        """
        delivered = 0
        for connection in self._registry.connections_for(user_id):
            if connection.send(payload):
                delivered += 1
        logger.debug(
            "[Broadcast] %s -> user %s (%d connection(s))",
            payload.get("type"), user_id, delivered,
        )
        return delivered

    def broadcast_to_all_except(self, user_id: str, payload: dict) -> int:
        """Queue ``payload`` for every registered user other than ``user_id``."""
        delivered = 0
        for other_id in self._registry.user_ids():
            if other_id != user_id:
                delivered += self.send_to_user(other_id, payload)
        return delivered
