"""Chat router providing the relay WebSocket endpoint.

This module provides:
    - WebSocket /ws: Real-time messaging and presence

Protocol Flow:
    1. Client connects -> Server sends {type: "welcome", message}
    2. Client sends {type: "auth", token}
       -> Server replies {type: "auth_success", userId}
       -> Other users receive {type: "user_status_change", isOnline: true}
          (only when this is the user's first live session)
    3. Client sends request events (see ``dispatcher.py`` for the list)
    4. On disconnect -> when the user's last session closes, other users
       receive {type: "user_status_change", isOnline: false}

Frames are JSON text. Malformed frames get an ``error`` reply; they never
close the connection.
"""
import asyncio
import logging

import anyio
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from .dispatcher import RelaySession
from .relay import Relay

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def relay_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint handling one client's whole session."""
    relay: Relay = websocket.app.state.relay

    await websocket.accept()
    connection = relay.new_connection(websocket)
    session = RelaySession(connection, relay)
    logger.info("[WS] New connection %s", connection.connection_id)

    try:
        await session.open()

        # Main message loop
        while True:
            remaining = session.auth_time_remaining()
            try:
                if remaining is None:
                    message = await websocket.receive()
                else:
                    message = await asyncio.wait_for(websocket.receive(), timeout=remaining)
            except asyncio.TimeoutError:
                logger.info(
                    "[WS] Connection %s did not authenticate in time, closing",
                    connection.connection_id,
                )
                await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
                break

            if message["type"] == "websocket.disconnect":
                break

            raw = message.get("text")
            if raw is None and message.get("bytes") is not None:
                raw = message["bytes"].decode("utf-8", errors="replace")
            if raw is None:
                continue
            await session.handle_frame(raw)

    except WebSocketDisconnect:
        pass
    finally:
        # Unregistration runs to completion even if this task is cancelled.
        with anyio.CancelScope(shield=True):
            await session.close()
