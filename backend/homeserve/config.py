"""HomeServe relay configuration.

Loads settings from two YAML files:
  * homeserve.settings.yaml: non-secret configuration
  * homeserve.secrets.yaml: secrets (never committed)

Paths can be overridden with HOMESERVE_SETTINGS / HOMESERVE_SECRETS.
JWT_SECRET, when set, overrides ``secrets.jwt.secret_key`` so the relay
can share the signing key of the REST API without a secrets file.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("homeserve.settings.yaml")
SECRETS_FILE  = Path("homeserve.secrets.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class JWTSecrets(BaseModel):
    secret_key: str = "change-me-in-production"
    algorithm:  str = "HS256"
    access_token_expire_minutes: int = 60 * 24


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 8081
    allowed_origins: List[str] = Field(default_factory=lambda: [
        "http://localhost:5000",
        "http://localhost:5173",
        "http://127.0.0.1:5000",
        "http://127.0.0.1:5173",
    ])


class DatabaseSettings(BaseModel):
    path: str = "homeserve.duckdb"


class RelaySettings(BaseModel):
    """WebSocket relay behaviour."""
    outbound_queue_size:       int = 64
    overflow_policy:           Literal["close", "drop_newest", "drop_oldest"] = "close"
    # None disables the unauthenticated idle timeout.
    auth_timeout_seconds:      Optional[float] = None
    reset_presence_on_startup: bool = True
    welcome_message:           str  = "Connected to HomeServe WebSocket server"

    @field_validator("outbound_queue_size")
    @classmethod
    def _positive_queue(cls, value: int) -> int:
        if value < 1:
            raise ValueError("outbound_queue_size must be at least 1")
        return value

    @field_validator("auth_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and value <= 0:
            raise ValueError("auth_timeout_seconds must be positive or null")
        return value


class LoggingSettings(BaseModel):
    level: str = "info"


class AppSettings(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    relay:    RelaySettings    = Field(default_factory=RelaySettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)
    secrets:  Secrets          = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object."""
    settings_path = Path(settings_path or os.environ.get("HOMESERVE_SETTINGS", SETTINGS_FILE))
    secrets_path  = Path(secrets_path or os.environ.get("HOMESERVE_SECRETS", SECRETS_FILE))

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data

    app_settings = AppSettings(**settings_data)

    env_secret = os.environ.get("JWT_SECRET")
    if env_secret:
        app_settings.secrets.jwt.secret_key = env_secret

    logger.info(
        "Settings loaded (server=%s:%s, database=%s, overflow_policy=%s)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.database.path,
        app_settings.relay.overflow_policy,
    )
    return app_settings


_config: Optional[AppSettings] = None


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: AppSettings) -> None:
    """Replace the cached settings (tests and embedding callers)."""
    global _config
    _config = config


def reset_config() -> None:
    global _config
    _config = None
