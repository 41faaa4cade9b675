"""Tests for environment-driven settings."""

from __future__ import annotations

from collections.abc import Iterator

import pytest

from n8n_mcp_security import config
from n8n_mcp_security.config import ENV_KEYS, load_settings, parse_duration


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    for key in ENV_KEYS.values():
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(config, "load_dotenv", lambda **kwargs: False)
    config._load_settings_cached.cache_clear()
    yield
    config._load_settings_cached.cache_clear()


class TestParseDuration:
    @pytest.mark.parametrize(
        "value, expected",
        [
            ("24h", 86400.0),
            ("30m", 1800.0),
            ("1500ms", 1.5),
            ("2d", 172800.0),
            ("45s", 45.0),
            ("90", 90.0),
            (" 1H ", 3600.0),
        ],
    )
    def test_valid(self, value: str, expected: float) -> None:
        assert parse_duration(value) == expected

    @pytest.mark.parametrize("value", ["", "h", "10w", "-5s", "1h30m"])
    def test_invalid(self, value: str) -> None:
        with pytest.raises(ValueError):
            parse_duration(value)


class TestLoadSettings:
    def test_defaults_generate_secrets(self) -> None:
        settings = load_settings()
        assert settings.auth.jwt_secret_generated is True
        assert len(settings.auth.jwt_secret) == 64
        assert settings.resources.secret_generated is True
        assert settings.resources.secret != settings.auth.jwt_secret
        assert settings.auth.jwt_expires_in_seconds == 86400
        assert settings.auth.session_timeout_seconds == 3600
        assert settings.auth.jwt_issuer == "n8n-mcp-server"
        assert settings.rate_limit.requests == 100
        assert settings.rate_limit.window_seconds == 60
        assert settings.audit.max_entries == 10_000
        assert settings.telemetry.max_boundaries == 1_000
        assert settings.features.rbac is True
        assert settings.resources.server_id

    def test_secret_not_in_repr(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("JWT_SECRET", "a-very-long-and-private-secret")
        settings = load_settings()
        assert settings.auth.jwt_secret_generated is False
        assert "a-very-long-and-private-secret" not in repr(settings)

    def test_cached(self) -> None:
        assert load_settings() is load_settings()

    def test_env_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("JWT_EXPIRES_IN", "2h")
        monkeypatch.setenv("SESSION_TIMEOUT", "15m")
        monkeypatch.setenv("RATE_LIMIT_REQUESTS", "7")
        monkeypatch.setenv("RATE_LIMIT_WINDOW", "500ms")
        monkeypatch.setenv("ENABLE_RBAC", "false")
        monkeypatch.setenv("ENABLE_MULTI_TENANT", "0")
        monkeypatch.setenv("MCP_SERVER_ID", "server-a")
        monkeypatch.setenv("AUDIT_LOG_MAX_ENTRIES", "50")

        settings = load_settings()
        assert settings.auth.jwt_expires_in_seconds == 7200
        assert settings.auth.session_timeout_seconds == 900
        assert settings.rate_limit.requests == 7
        assert settings.rate_limit.window_seconds == 0.5
        assert settings.features.rbac is False
        assert settings.features.multi_tenant is False
        assert settings.features.audit_log is True
        assert settings.resources.server_id == "server-a"
        assert settings.audit.max_entries == 50

    def test_invalid_values_fall_back(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RATE_LIMIT_REQUESTS", "lots")
        monkeypatch.setenv("SESSION_TIMEOUT", "forever")
        settings = load_settings()
        assert settings.rate_limit.requests == 100
        assert settings.auth.session_timeout_seconds == 3600

    @pytest.mark.parametrize("secret", ["", "   ", "short"])
    def test_weak_jwt_secret_is_fatal(
        self, monkeypatch: pytest.MonkeyPatch, secret: str
    ) -> None:
        monkeypatch.setenv("JWT_SECRET", secret)
        with pytest.raises(RuntimeError, match="Invalid configuration"):
            load_settings()

    def test_weak_indicator_secret_is_fatal(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RESOURCE_INDICATOR_SECRET", "tiny")
        with pytest.raises(RuntimeError, match="Invalid configuration"):
            load_settings()

    def test_out_of_range_limit_is_fatal(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RATE_LIMIT_REQUESTS", "0")
        with pytest.raises(RuntimeError, match="Invalid configuration"):
            load_settings()
