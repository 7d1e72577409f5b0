"""Assembly of the relay's collaborators.

``Relay`` is created once per process in the application lifespan and
stored on ``app.state.relay``; WebSocket handlers receive it from there
instead of reaching for module-level globals.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import WebSocket

from homeserve.auth.service import TokenService
from homeserve.config import AppSettings, RelaySettings
from homeserve.database import Database
from homeserve.users.service import UserDirectory

from .broadcast import BroadcastRouter
from .presence import PresenceTracker
from .registry import ConnectionRegistry, LiveConnection
from .store import ConversationStore

logger = logging.getLogger(__name__)


@dataclass
class Relay:
    settings: RelaySettings
    db: Database
    users: UserDirectory
    store: ConversationStore
    tokens: TokenService
    registry: ConnectionRegistry
    router: BroadcastRouter
    presence: PresenceTracker

    @classmethod
    def create(cls, config: AppSettings, db: Optional[Database] = None) -> "Relay":
        db = db or Database(config.database.path)
        users = UserDirectory(db)
        registry = ConnectionRegistry()
        router = BroadcastRouter(registry)
        return cls(
            settings=config.relay,
            db=db,
            users=users,
            store=ConversationStore(db, users),
            tokens=TokenService.from_secrets(config.secrets.jwt),
            registry=registry,
            router=router,
            presence=PresenceTracker(registry, users, router),
        )

    def startup(self) -> None:
        if self.settings.reset_presence_on_startup:
            self.presence.reset_all()
        else:
            logger.info("[Relay] Keeping persisted presence flags from previous run")

    def new_connection(self, websocket: WebSocket) -> LiveConnection:
        return LiveConnection(
            websocket,
            queue_size=self.settings.outbound_queue_size,
            overflow_policy=self.settings.overflow_policy,
        )

    def shutdown(self) -> None:
        self.db.close()
