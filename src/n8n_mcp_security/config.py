"""Configuration management for the n8n MCP security core."""

from __future__ import annotations

import logging
import os
import re
import secrets
import uuid
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

_config_logger = logging.getLogger(__name__)

_MIN_SECRET_LENGTH = 16


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO", description="Python logging level name")
    file: str | None = Field(default=None, description="Optional log file path")


class AuthSettings(BaseModel):
    """Token and session settings.

    ``jwt_secret`` signs bearer tokens. When the operator does not pin one, a
    random secret is generated at startup, which means tokens do not survive a
    process restart.
    """

    jwt_secret: str = Field(repr=False, min_length=_MIN_SECRET_LENGTH)
    jwt_secret_generated: bool = Field(default=False)
    jwt_expires_in_seconds: float = Field(default=24 * 3600, gt=0)
    jwt_issuer: str = Field(default="n8n-mcp-server", min_length=1)
    jwt_audience: str = Field(default="n8n-mcp-server", min_length=1)
    session_timeout_seconds: float = Field(default=3600, gt=0)
    users_config_path: str | None = Field(default=None)

    @field_validator("jwt_secret")
    @classmethod
    def _validate_secret(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("JWT secret must not be blank")
        return value


class FeatureSettings(BaseModel):
    rbac: bool = Field(default=True)
    audit_log: bool = Field(default=True)
    multi_tenant: bool = Field(default=True)
    resource_indicators: bool = Field(default=True)


class RateLimitSettings(BaseModel):
    requests: int = Field(default=100, ge=1)
    window_seconds: float = Field(default=60.0, gt=0)
    max_identifiers: int = Field(default=10_000, ge=1)


class AuditSettings(BaseModel):
    max_entries: int = Field(default=10_000, ge=1)
    source: str = Field(default="n8n-mcp-server", min_length=1)


class ResourceIndicatorSettings(BaseModel):
    secret: str = Field(repr=False, min_length=_MIN_SECRET_LENGTH)
    secret_generated: bool = Field(default=False)
    ttl_seconds: float = Field(default=24 * 3600, gt=0)
    server_id: str = Field(min_length=1)

    @field_validator("secret")
    @classmethod
    def _validate_secret(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Resource indicator secret must not be blank")
        return value


class TelemetrySettings(BaseModel):
    max_boundaries: int = Field(default=1_000, ge=1)


class Settings(BaseModel):
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    auth: AuthSettings
    features: FeatureSettings = Field(default_factory=FeatureSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)
    resources: ResourceIndicatorSettings
    telemetry: TelemetrySettings = Field(default_factory=TelemetrySettings)


ENV_KEYS = {
    "jwt_secret": "JWT_SECRET",
    "jwt_expires_in": "JWT_EXPIRES_IN",
    "jwt_issuer": "JWT_ISSUER",
    "jwt_audience": "JWT_AUDIENCE",
    "session_timeout": "SESSION_TIMEOUT",
    "users_config_path": "USERS_CONFIG_PATH",
    "enable_rbac": "ENABLE_RBAC",
    "enable_audit_log": "ENABLE_AUDIT_LOG",
    "enable_multi_tenant": "ENABLE_MULTI_TENANT",
    "enable_resource_indicators": "ENABLE_RESOURCE_INDICATORS",
    "resource_secret": "RESOURCE_INDICATOR_SECRET",
    "resource_ttl": "RESOURCE_INDICATOR_TTL",
    "server_id": "MCP_SERVER_ID",
    "rate_limit_requests": "RATE_LIMIT_REQUESTS",
    "rate_limit_window": "RATE_LIMIT_WINDOW",
    "rate_limit_max_identifiers": "RATE_LIMIT_MAX_IDENTIFIERS",
    "audit_max_entries": "AUDIT_LOG_MAX_ENTRIES",
    "audit_source": "AUDIT_LOG_SOURCE",
    "boundary_max_entries": "ERROR_BOUNDARY_MAX_ENTRIES",
    "log_level": "LOG_LEVEL",
    "log_file": "LOG_FILE",
}

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)?\s*$", re.IGNORECASE)
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, "d": 86400.0}


def parse_duration(value: str) -> float:
    """Parse ``"24h"``, ``"30m"``, ``"1500ms"`` or a bare number of seconds."""
    match = _DURATION_RE.match(value)
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    amount, unit = match.groups()
    return float(amount) * _DURATION_UNITS[(unit or "s").lower()]


def _project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        _config_logger.warning(
            "Invalid integer value for %s: %r, using default %d", key, value, default
        )
        return default


def _env_duration(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return parse_duration(value)
    except ValueError:
        _config_logger.warning(
            "Invalid duration value for %s: %r, using default %ss", key, value, default
        )
        return default


def _env_secret(key: str) -> tuple[str, bool]:
    """Return the configured secret, or a freshly generated one.

    An explicitly set but blank value is passed through unchanged so that
    validation rejects it; only an unset variable triggers generation.
    """
    value = os.getenv(key)
    if value is None:
        return secrets.token_hex(32), True
    return value, False


def load_settings() -> Settings:
    """Load configuration and cache the result."""

    return _load_settings_cached()


@lru_cache(maxsize=1)
def _load_settings_cached() -> Settings:
    load_dotenv(dotenv_path=_project_root() / ".env")

    jwt_secret, jwt_generated = _env_secret(ENV_KEYS["jwt_secret"])
    resource_secret, resource_generated = _env_secret(ENV_KEYS["resource_secret"])
    users_path = os.getenv(ENV_KEYS["users_config_path"], "").strip() or None

    settings_data: dict[str, object] = {
        "logging": {
            "level": os.getenv(ENV_KEYS["log_level"], LoggingSettings().level),
            "file": os.getenv(ENV_KEYS["log_file"], "").strip() or None,
        },
        "auth": {
            "jwt_secret": jwt_secret,
            "jwt_secret_generated": jwt_generated,
            "jwt_expires_in_seconds": _env_duration(ENV_KEYS["jwt_expires_in"], 24 * 3600),
            "jwt_issuer": os.getenv(ENV_KEYS["jwt_issuer"], "n8n-mcp-server"),
            "jwt_audience": os.getenv(ENV_KEYS["jwt_audience"], "n8n-mcp-server"),
            "session_timeout_seconds": _env_duration(ENV_KEYS["session_timeout"], 3600),
            "users_config_path": users_path,
        },
        "features": {
            "rbac": _env_bool(ENV_KEYS["enable_rbac"], True),
            "audit_log": _env_bool(ENV_KEYS["enable_audit_log"], True),
            "multi_tenant": _env_bool(ENV_KEYS["enable_multi_tenant"], True),
            "resource_indicators": _env_bool(ENV_KEYS["enable_resource_indicators"], True),
        },
        "rate_limit": {
            "requests": _env_int(
                ENV_KEYS["rate_limit_requests"], RateLimitSettings().requests
            ),
            "window_seconds": _env_duration(
                ENV_KEYS["rate_limit_window"], RateLimitSettings().window_seconds
            ),
            "max_identifiers": _env_int(
                ENV_KEYS["rate_limit_max_identifiers"], RateLimitSettings().max_identifiers
            ),
        },
        "audit": {
            "max_entries": _env_int(ENV_KEYS["audit_max_entries"], AuditSettings().max_entries),
            "source": os.getenv(ENV_KEYS["audit_source"], AuditSettings().source),
        },
        "resources": {
            "secret": resource_secret,
            "secret_generated": resource_generated,
            "ttl_seconds": _env_duration(ENV_KEYS["resource_ttl"], 24 * 3600),
            "server_id": os.getenv(ENV_KEYS["server_id"], "").strip() or str(uuid.uuid4()),
        },
        "telemetry": {
            "max_boundaries": _env_int(
                ENV_KEYS["boundary_max_entries"], TelemetrySettings().max_boundaries
            ),
        },
    }

    try:
        settings = Settings.model_validate(settings_data)
    except ValidationError as exc:
        raise RuntimeError(f"Invalid configuration: {exc}") from exc

    if settings.auth.jwt_secret_generated:
        _config_logger.warning(
            "%s is not set; generated a random signing secret. "
            "Issued tokens will not survive a restart.",
            ENV_KEYS["jwt_secret"],
        )
    if settings.resources.secret_generated:
        _config_logger.warning(
            "%s is not set; generated a random indicator secret.",
            ENV_KEYS["resource_secret"],
        )

    return settings
