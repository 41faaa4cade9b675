"""Dispatcher-facing surface of the security core.

The operation dispatcher calls into ``SecurityCore`` for every privileged
action: it authenticates callers, checks permissions, mints and checks
resource indicators, applies rate limits and writes the audit trail. Every
denial on these paths is audited here, so callers only need to log their own
business events.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, replace
from typing import Any

from n8n_mcp_security.audit.log import AuditLog
from n8n_mcp_security.audit.models import AuditAction, AuditLogEntry, AuditQuery
from n8n_mcp_security.auth.models import Permission, Role, TokenClaims, User
from n8n_mcp_security.auth.permissions import PermissionEngine
from n8n_mcp_security.auth.sessions import SessionStore
from n8n_mcp_security.auth.tokens import TokenService
from n8n_mcp_security.auth.users import UserDirectory
from n8n_mcp_security.errors import (
    AuthenticationFailed,
    InsufficientPermission,
    InvalidToken,
    ValidationError,
)
from n8n_mcp_security.middleware.rate_limit import RateLimitResult, SlidingWindowRateLimiter
from n8n_mcp_security.resources.indicators import (
    IndicatorValidation,
    ResourceIndicatorService,
)
from n8n_mcp_security.telemetry.boundary import (
    BoundaryEvent,
    BoundaryKind,
    ErrorBoundary,
    MetricsCollector,
)
from n8n_mcp_security.utils.masking import sanitize_log_value

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthResult:
    token: str
    session_id: str
    user: User

    def to_dict(self) -> dict[str, Any]:
        return {
            "token": self.token,
            "sessionId": self.session_id,
            "user": self.user.to_public_dict(),
        }


class SecurityCore:
    """Owns every security store and exposes the operations the dispatcher uses."""

    def __init__(
        self,
        *,
        users: UserDirectory,
        sessions: SessionStore,
        tokens: TokenService,
        permissions: PermissionEngine,
        indicators: ResourceIndicatorService,
        rate_limiter: SlidingWindowRateLimiter,
        audit: AuditLog,
        metrics: MetricsCollector,
        multi_tenant: bool = True,
    ) -> None:
        self.users = users
        self.sessions = sessions
        self.tokens = tokens
        self.permissions = permissions
        self.indicators = indicators
        self.rate_limiter = rate_limiter
        self.audit = audit
        self.metrics = metrics
        self._multi_tenant = multi_tenant

    # -- authentication -------------------------------------------------

    def authenticate(self, username: str, password: str) -> AuthResult:
        if not username or not password:
            self.audit.append(
                AuditAction.LOGIN_FAILED, None, None, {"reason": "missing_credentials"}
            )
            raise AuthenticationFailed("missing_credentials")

        user = self.users.verify_credentials(username, password)
        if user is None:
            self.audit.append(
                AuditAction.LOGIN_FAILED,
                None,
                None,
                {"username": username, "reason": "invalid_credentials"},
            )
            logger.warning("Authentication failed for %s", sanitize_log_value(username))
            raise AuthenticationFailed()

        session = self.sessions.create(user.id)
        token = self.tokens.issue(user, session.session_id)
        self.audit.append(
            AuditAction.LOGIN_SUCCESS,
            user.id,
            user.tenant_id,
            {
                "username": user.username,
                "role": user.role.value,
                "sessionId": session.session_id,
            },
        )
        logger.info("User %s authenticated (session %s)", user.id, session.session_id)
        return AuthResult(token=token, session_id=session.session_id, user=user)

    def logout(self, token: str | None) -> bool:
        """End the token's session. Safe to call repeatedly or with a bad token."""
        if not token:
            return False
        try:
            claims = self.tokens.decode(token)
        except InvalidToken:
            return False
        removed = self.sessions.invalidate(claims.session_id)
        if removed:
            self.audit.append(
                AuditAction.LOGOUT,
                claims.user_id,
                claims.tenant_id,
                {"sessionId": claims.session_id},
            )
        return removed

    def validate_token(self, token: str | None) -> TokenClaims:
        try:
            return self.tokens.verify(token or "")
        except InvalidToken as exc:
            self.audit.append(
                AuditAction.TOKEN_VALIDATION_FAILED, None, None, {"reason": exc.reason}
            )
            raise

    # -- authorization --------------------------------------------------

    def has_permission(self, token: str | None, permission: Permission | str) -> bool:
        return self.permissions.has_permission(token, permission)

    def require_permission(
        self, token: str | None, permission: Permission | str
    ) -> TokenClaims | None:
        try:
            return self.permissions.require_permission(token, permission)
        except InsufficientPermission as exc:
            claims = self._peek_claims(token)
            self.audit.append(
                AuditAction.PERMISSION_DENIED,
                claims.user_id if claims else None,
                claims.tenant_id if claims else None,
                {"required": exc.required, "authenticated": claims is not None},
            )
            raise

    # -- resource indicators --------------------------------------------

    def generate_resource_indicator(
        self, resource_type: str, resource_id: str, token: str | None = None
    ) -> str:
        return self.indicators.generate(resource_type, resource_id, token).indicator

    def validate_resource_indicator(
        self, indicator: str, token: str | None = None
    ) -> IndicatorValidation:
        return self.indicators.validate(indicator, token)

    # -- rate limiting --------------------------------------------------

    def enforce(
        self,
        identifier: str,
        max_requests: int | None = None,
        window_seconds: float | None = None,
    ) -> RateLimitResult:
        return self.rate_limiter.enforce(identifier, max_requests, window_seconds)

    # -- audit ----------------------------------------------------------

    def log_audit_event(
        self,
        action: str,
        user_id: str | None,
        tenant_id: str | None,
        metadata: Mapping[str, Any] | None = None,
    ) -> AuditLogEntry | None:
        return self.audit.append(action, user_id, tenant_id, metadata)

    def query_audit_log(
        self, token: str | None, filters: AuditQuery | None = None
    ) -> list[AuditLogEntry]:
        """Query the trail on behalf of a caller.

        Requires ``view_audit_logs``. With multi-tenancy enabled, callers
        other than administrators only see entries from their own tenant.
        """
        filters = filters or AuditQuery()
        claims = self.require_permission(token, Permission.VIEW_AUDIT_LOGS)
        if claims is None and token:
            claims = self._peek_claims(token)

        if self._multi_tenant and claims is not None and not claims.is_admin:
            if filters.tenant_id is not None and filters.tenant_id != claims.tenant_id:
                return []
            filters = replace(filters, tenant_id=claims.tenant_id)
        return self.audit.query(filters)

    # -- error boundaries -----------------------------------------------

    def open_boundary(self, context: Mapping[str, Any] | None = None) -> ErrorBoundary:
        return self.metrics.open(context)

    def record_boundary(
        self,
        boundary: ErrorBoundary,
        kind: BoundaryKind,
        message: str,
        details: Mapping[str, Any] | None = None,
    ) -> BoundaryEvent:
        return self.metrics.record(boundary, kind, message, details)

    def close_boundary(self, boundary: ErrorBoundary, success: bool) -> ErrorBoundary:
        return self.metrics.close(boundary, success)

    # -- administration -------------------------------------------------

    def provision_user(
        self,
        token: str | None,
        username: str,
        email: str,
        role: Role | str,
        password: str,
        tenant_id: str | None = None,
    ) -> User:
        """Create an account. Without an explicit tenant it joins the caller's."""
        claims = self.require_permission(token, Permission.MANAGE_USERS)
        if tenant_id is None:
            tenant_id = claims.tenant_id if claims else "default"
        user = self.users.provision(username, email, role, tenant_id, password=password)
        self.audit.append(
            AuditAction.USER_PROVISIONED,
            claims.user_id if claims else None,
            user.tenant_id,
            {"targetUserId": user.id, "username": user.username, "role": user.role.value},
        )
        return user

    def update_user_role(self, token: str | None, user_id: str, role: Role | str) -> User:
        claims = self.require_permission(token, Permission.MANAGE_USERS)
        before = self._require_user(user_id).role
        user = self.users.set_role(user_id, role)
        # Issued tokens carry the old role's permission snapshot.
        ended = self.sessions.invalidate_user(user_id) if user.role is not before else 0
        self.audit.append(
            AuditAction.USER_ROLE_CHANGED,
            claims.user_id if claims else None,
            user.tenant_id,
            {
                "targetUserId": user_id,
                "from": before.value,
                "to": user.role.value,
                "sessionsEnded": ended,
            },
        )
        return user

    def set_user_active(self, token: str | None, user_id: str, is_active: bool) -> User:
        claims = self.require_permission(token, Permission.MANAGE_USERS)
        self._require_user(user_id)
        user = self.users.set_active(user_id, is_active)
        ended = 0 if is_active else self.sessions.invalidate_user(user_id)
        self.audit.append(
            AuditAction.USER_STATUS_CHANGED,
            claims.user_id if claims else None,
            user.tenant_id,
            {"targetUserId": user_id, "isActive": is_active, "sessionsEnded": ended},
        )
        return user

    def _require_user(self, user_id: str) -> User:
        user = self.users.get_by_id(user_id)
        if user is None:
            raise ValidationError(f"unknown user: {user_id}")
        return user

    def _peek_claims(self, token: str | None) -> TokenClaims | None:
        """Decode a token for audit attribution without extending its session."""
        if not token:
            return None
        try:
            return self.tokens.decode(token)
        except InvalidToken:
            return None
