"""HomeServe Messaging Relay.

This is the main entry point for the HomeServe real-time relay: 1:1 chat
between homeowners and housekeepers plus online/offline presence, served
over a single WebSocket endpoint.

Modules:
    - chat: Connection registry, presence, conversation store, dispatcher
    - users: User directory (display fields and presence flags)
    - auth: Bearer token verification shared with the REST API
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from homeserve.chat.relay import Relay
from homeserve.chat.router import router as chat_router
from homeserve.config import AppSettings, get_config

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence per-frame protocol chatter from the ASGI server.
for _noisy in ("uvicorn.access", "websockets", "websockets.protocol"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config: AppSettings = app.state.config

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in homeserve.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    relay = Relay.create(config)
    relay.startup()
    app.state.relay = relay
    logger.info(
        "Relay ready (database=%s, queue=%d, overflow=%s)",
        config.database.path,
        config.relay.outbound_queue_size,
        config.relay.overflow_policy,
    )

    yield  # Application runs here

    # Shutdown
    relay.shutdown()
    logger.info("Application shutdown complete")


def create_app(config: Optional[AppSettings] = None) -> FastAPI:
    """Build the FastAPI application around ``config`` (or the loaded settings)."""
    config = config or get_config()

    app = FastAPI(
        title="HomeServe Relay",
        description="Real-time messaging and presence for the HomeServe marketplace",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.config = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(chat_router)

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object indicating the server is running.
        """
        return {"status": "ok"}

    return app


app = create_app()


def run() -> None:
    """Serve the relay with uvicorn using the configured host and port."""
    import uvicorn

    config = get_config()
    uvicorn.run(
        "homeserve.main:app",
        host=config.server.host,
        port=config.server.port,
    )
