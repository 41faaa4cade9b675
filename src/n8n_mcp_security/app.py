"""Security core assembly."""

from __future__ import annotations

import logging
from functools import lru_cache

from n8n_mcp_security.audit.log import AuditLog
from n8n_mcp_security.auth.permissions import PermissionEngine, check_role_table_closure
from n8n_mcp_security.auth.sessions import SessionStore
from n8n_mcp_security.auth.tokens import TokenService
from n8n_mcp_security.auth.users import UserDirectory
from n8n_mcp_security.config import Settings, load_settings
from n8n_mcp_security.core import SecurityCore
from n8n_mcp_security.errors import ValidationError
from n8n_mcp_security.logging_utils import configure_logging
from n8n_mcp_security.middleware.rate_limit import SlidingWindowRateLimiter
from n8n_mcp_security.resources.indicators import ResourceIndicatorService
from n8n_mcp_security.telemetry.boundary import MetricsCollector

logger = logging.getLogger(__name__)


def build_security_core(settings: Settings) -> SecurityCore:
    """Wire every store from ``settings``.

    Fails fast (``RuntimeError``) when the role table breaks its superset
    invariant or the users file cannot be loaded.
    """
    try:
        check_role_table_closure()
    except ValueError as exc:
        raise RuntimeError(f"Invalid role permission table: {exc}") from exc

    features = settings.features
    audit = AuditLog(
        settings.audit.max_entries,
        source=settings.audit.source,
        enabled=features.audit_log,
    )
    sessions = SessionStore(settings.auth.session_timeout_seconds)
    tokens = TokenService(
        settings.auth.jwt_secret,
        sessions,
        expires_in_seconds=settings.auth.jwt_expires_in_seconds,
        issuer=settings.auth.jwt_issuer,
        audience=settings.auth.jwt_audience,
    )
    users = UserDirectory()
    if settings.auth.users_config_path:
        try:
            users.load_users_file(settings.auth.users_config_path)
        except (OSError, ValidationError) as exc:
            raise RuntimeError(
                f"Failed to load users from {settings.auth.users_config_path}: {exc}"
            ) from exc

    indicators = ResourceIndicatorService(
        settings.resources.secret,
        tokens,
        server_id=settings.resources.server_id,
        ttl_seconds=settings.resources.ttl_seconds,
        audit=audit,
        enabled=features.resource_indicators,
    )
    rate_limiter = SlidingWindowRateLimiter(
        settings.rate_limit.requests,
        settings.rate_limit.window_seconds,
        max_identifiers=settings.rate_limit.max_identifiers,
    )
    metrics = MetricsCollector(settings.telemetry.max_boundaries, audit=audit)

    logger.info(
        "Security core ready (rbac=%s, audit=%s, multi_tenant=%s, resource_indicators=%s)",
        features.rbac,
        features.audit_log,
        features.multi_tenant,
        features.resource_indicators,
    )
    return SecurityCore(
        users=users,
        sessions=sessions,
        tokens=tokens,
        permissions=PermissionEngine(tokens, enabled=features.rbac, audit=audit),
        indicators=indicators,
        rate_limiter=rate_limiter,
        audit=audit,
        metrics=metrics,
        multi_tenant=features.multi_tenant,
    )


@lru_cache(maxsize=1)
def get_security_core() -> SecurityCore:
    """Get or create the process-wide security core."""
    configure_logging()
    return build_security_core(load_settings())
