"""Online/offline presence derived from connection lifecycle.

A user is online iff at least one live connection is registered for them.
``connect`` and ``disconnect`` are the two critical sections that keep the
persisted ``is_online`` flag in step with the registry: each holds the
user's registry lock across the registry mutation and the presence write,
so concurrent connects/disconnects for one user cannot interleave between
"set became empty" and "mark offline".

Presence broadcasts fire once per real edge:
    - second session of an online user: no broadcast
    - closing one of two sessions: no broadcast
    - closing the last session: one ``user_status_change{isOnline: false}``

``set_manual_status`` is the explicit client override and always persists
and always broadcasts, even when the value did not change.

Store failures are logged and surfaced as ``Transient``; the registry keeps
its state, and the edge broadcast is still sent from registry truth.
"""
import logging
from datetime import datetime
from typing import Optional

from fastapi.concurrency import run_in_threadpool

from homeserve.users.schemas import PresenceState
from homeserve.users.service import UserDirectory

from .broadcast import BroadcastRouter
from .errors import RelayError, Transient
from .registry import ConnectionRegistry, LiveConnection
from .schemas import OutboundType, outbound

logger = logging.getLogger(__name__)


class PresenceTracker:
    """Persists and broadcasts presence edges."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        users: UserDirectory,
        router: BroadcastRouter,
    ) -> None:
        self._registry = registry
        self._users = users
        self._router = router

    # -----------------------------------------------------------------------
    # Connection lifecycle
    # -----------------------------------------------------------------------

    async def connect(self, user_id: str, connection: LiveConnection) -> bool:
        """Register ``connection`` and flip the user online if needed.

        Returns:
            True if an online edge was broadcast.

        Raises:
            Transient: Presence could not be persisted. The connection stays
                registered.
        """
        async with self._registry.lock_for(user_id):
            first = self._registry.register(user_id, connection)
            return await self.mark_online_if_needed(user_id, announce=first)

    async def disconnect(self, user_id: str, connection: LiveConnection) -> bool:
        """Unregister ``connection``; mark the user offline on the last one.

        Returns:
            True if the user became fully offline.
        """
        async with self._registry.lock_for(user_id):
            became_offline = self._registry.unregister(user_id, connection)
            if became_offline:
                await self.mark_offline(user_id)
        return became_offline

    # -----------------------------------------------------------------------
    # Presence edges
    # -----------------------------------------------------------------------

    async def mark_online_if_needed(self, user_id: str, announce: bool = True) -> bool:
        """Persist ``isOnline=true`` if the stored flag is false.

        Only the registry's first-session edge (``announce``) broadcasts;
        later sessions just repair a stored flag left false by a failed write.
        """
        last_seen = datetime.utcnow()
        try:
            if not await run_in_threadpool(self._users.is_online, user_id):
                state = await run_in_threadpool(self._users.set_presence, user_id, True)
                last_seen = state.lastSeen
        except RelayError as exc:
            logger.warning("[Presence] Could not persist online state for %s: %s", user_id, exc)
            if announce:
                self._announce(user_id, True, last_seen)
            raise Transient("Presence update failed") from exc

        if not announce:
            return False
        logger.info("[Presence] User %s is online", user_id)
        self._announce(user_id, True, last_seen)
        return True

    async def mark_offline(self, user_id: str) -> Optional[PresenceState]:
        """Persist and announce ``isOnline=false``.

        Only called on the registry's became-empty edge. A failed write is
        logged; there is no connection left to report it to.
        """
        state: Optional[PresenceState] = None
        try:
            state = await run_in_threadpool(self._users.set_presence, user_id, False)
            last_seen = state.lastSeen
        except RelayError as exc:
            logger.error("[Presence] Could not persist offline state for %s: %s", user_id, exc)
            last_seen = datetime.utcnow()

        logger.info("[Presence] User %s is offline", user_id)
        self._announce(user_id, False, last_seen)
        return state

    async def set_manual_status(self, user_id: str, is_online: bool) -> PresenceState:
        """Client-requested override. Always persists and always broadcasts."""
        try:
            state = await run_in_threadpool(self._users.set_presence, user_id, is_online)
        except RelayError as exc:
            logger.warning("[Presence] Manual status for %s not persisted: %s", user_id, exc)
            raise Transient("Presence update failed") from exc

        logger.info("[Presence] User %s set status isOnline=%s", user_id, is_online)
        self._announce(user_id, is_online, state.lastSeen)
        return state

    def reset_all(self) -> int:
        """Clear every persisted online flag (process startup)."""
        count = self._users.reset_all_presence()
        logger.info("[Presence] Reset %d stale online flag(s) at startup", count)
        return count

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    def _announce(self, user_id: str, is_online: bool, last_seen: datetime) -> None:
        payload = outbound(
            OutboundType.USER_STATUS_CHANGE,
            userId=user_id,
            isOnline=is_online,
            lastSeen=last_seen.isoformat(),
        )
        self._router.broadcast_to_all_except(user_id, payload)
