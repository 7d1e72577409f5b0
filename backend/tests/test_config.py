"""Tests for YAML-backed relay settings."""
from __future__ import annotations

import pytest
from pydantic import ValidationError

from homeserve.config import (
    AppSettings,
    RelaySettings,
    get_config,
    load_config,
    reset_config,
    set_config,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("HOMESERVE_SETTINGS", "HOMESERVE_SECRETS", "JWT_SECRET"):
        monkeypatch.delenv(name, raising=False)
    yield
    reset_config()


def _write(path, text):
    path.write_text(text, encoding="utf-8")
    return path


class TestRelaySettings:
    def test_defaults(self):
        cfg = RelaySettings()
        assert cfg.outbound_queue_size == 64
        assert cfg.overflow_policy == "close"
        assert cfg.auth_timeout_seconds is None
        assert cfg.reset_presence_on_startup is True

    @pytest.mark.parametrize("size", [0, -3])
    def test_queue_size_must_be_positive(self, size):
        with pytest.raises(ValidationError):
            RelaySettings(outbound_queue_size=size)

    def test_unknown_overflow_policy(self):
        with pytest.raises(ValidationError):
            RelaySettings(overflow_policy="block")

    @pytest.mark.parametrize("timeout", [0, -1.5])
    def test_auth_timeout_must_be_positive(self, timeout):
        with pytest.raises(ValidationError):
            RelaySettings(auth_timeout_seconds=timeout)


class TestLoadConfig:
    def test_missing_files_fall_back_to_defaults(self, tmp_path):
        cfg = load_config(tmp_path / "nope.yaml", tmp_path / "nope.secrets.yaml")
        assert cfg == AppSettings()
        assert cfg.server.port == 8081

    def test_yaml_values(self, tmp_path):
        settings = _write(tmp_path / "settings.yaml", """
server:
  port: 9001
database:
  path: /var/lib/homeserve/relay.duckdb
relay:
  outbound_queue_size: 8
  overflow_policy: drop_oldest
  auth_timeout_seconds: 30
logging:
  level: debug
""")
        secrets = _write(tmp_path / "secrets.yaml", """
jwt:
  secret_key: from-yaml
""")
        cfg = load_config(settings, secrets)
        assert cfg.server.port == 9001
        assert cfg.database.path == "/var/lib/homeserve/relay.duckdb"
        assert cfg.relay.outbound_queue_size == 8
        assert cfg.relay.overflow_policy == "drop_oldest"
        assert cfg.relay.auth_timeout_seconds == 30
        assert cfg.logging.level == "debug"
        assert cfg.secrets.jwt.secret_key == "from-yaml"
        assert cfg.secrets.jwt.algorithm == "HS256"

    def test_env_paths(self, tmp_path, monkeypatch):
        settings = _write(tmp_path / "custom.yaml", "server:\n  port: 7000\n")
        monkeypatch.setenv("HOMESERVE_SETTINGS", str(settings))
        monkeypatch.setenv("HOMESERVE_SECRETS", str(tmp_path / "missing.yaml"))
        assert load_config().server.port == 7000

    def test_jwt_secret_env_overrides_yaml(self, tmp_path, monkeypatch):
        secrets = _write(tmp_path / "secrets.yaml", "jwt:\n  secret_key: from-yaml\n")
        monkeypatch.setenv("JWT_SECRET", "from-env")
        cfg = load_config(tmp_path / "settings.yaml", secrets)
        assert cfg.secrets.jwt.secret_key == "from-env"

    def test_invalid_yaml_value_rejected(self, tmp_path):
        settings = _write(tmp_path / "settings.yaml", "relay:\n  outbound_queue_size: 0\n")
        with pytest.raises(ValidationError):
            load_config(settings, tmp_path / "secrets.yaml")


class TestConfigCache:
    def test_set_and_reset(self):
        custom = AppSettings(relay=RelaySettings(outbound_queue_size=3))
        set_config(custom)
        assert get_config() is custom

        reset_config()
        set_config(AppSettings())
        assert get_config().relay.outbound_queue_size == 64
