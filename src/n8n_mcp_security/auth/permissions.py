"""Role-based permission table and enforcement guard."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from types import MappingProxyType
from typing import TYPE_CHECKING

from n8n_mcp_security.audit.models import AuditAction
from n8n_mcp_security.auth.models import Permission, Role, TokenClaims
from n8n_mcp_security.errors import InsufficientPermission, InvalidToken

if TYPE_CHECKING:
    from n8n_mcp_security.audit.log import AuditLog
    from n8n_mcp_security.auth.tokens import TokenService

logger = logging.getLogger(__name__)


ROLE_PERMISSIONS: Mapping[Role, frozenset[Permission]] = MappingProxyType(
    {
        Role.ADMIN: frozenset(Permission),
        Role.DEVELOPER: frozenset(
            {
                Permission.CREATE_WORKFLOW,
                Permission.UPDATE_WORKFLOW,
                Permission.EXECUTE_WORKFLOW,
                Permission.VIEW_WORKFLOW,
                Permission.MANAGE_TEMPLATES,
            }
        ),
        Role.VIEWER: frozenset({Permission.VIEW_WORKFLOW, Permission.EXECUTE_WORKFLOW}),
        Role.GUEST: frozenset({Permission.VIEW_WORKFLOW}),
    }
)

# Each role must hold every permission of the roles listed for it.
ROLE_SUPERSETS: Mapping[Role, tuple[Role, ...]] = MappingProxyType(
    {
        Role.ADMIN: (Role.DEVELOPER, Role.VIEWER, Role.GUEST),
        Role.DEVELOPER: (Role.GUEST,),
        Role.VIEWER: (Role.GUEST,),
        Role.GUEST: (),
    }
)


def permissions_for(role: Role | str) -> frozenset[Permission]:
    """Return the permission set granted to ``role`` (empty for unknown roles)."""
    try:
        return ROLE_PERMISSIONS[Role(role)]
    except ValueError:
        return frozenset()


def check_role_table_closure(
    table: Mapping[Role, frozenset[Permission]] = ROLE_PERMISSIONS,
    supersets: Mapping[Role, tuple[Role, ...]] = ROLE_SUPERSETS,
) -> None:
    """Raise ``ValueError`` if a superset role lacks a permission of its subsets."""
    missing_roles = [role for role in Role if role not in table]
    if missing_roles:
        raise ValueError(
            "Role table has no entry for: " + ", ".join(r.value for r in missing_roles)
        )
    for role, subsets in supersets.items():
        for subset in subsets:
            gap = table[subset] - table[role]
            if gap:
                names = ", ".join(sorted(p.value for p in gap))
                raise ValueError(
                    f"Role {role.value} must include all permissions of {subset.value}; "
                    f"missing: {names}"
                )


class PermissionEngine:
    """
    Checks bearer tokens against the static role table.

    ``require_permission`` does not tell a bad token apart from a valid token
    that lacks the permission: both raise ``InsufficientPermission``.
    When RBAC is disabled every check passes without verifying the token.
    Tokens that fail verification are written to ``audit`` when one is given.
    """

    def __init__(
        self,
        tokens: "TokenService",
        enabled: bool = True,
        *,
        audit: "AuditLog | None" = None,
    ) -> None:
        self._tokens = tokens
        self._enabled = enabled
        self._audit = audit

    @property
    def enabled(self) -> bool:
        return self._enabled

    def has_permission(self, token: str | None, permission: Permission | str) -> bool:
        if not self._enabled:
            return True
        return self._check(token, permission) is not None

    def require_permission(
        self, token: str | None, permission: Permission | str
    ) -> TokenClaims | None:
        """Return the verified claims, or None when RBAC is disabled."""
        if not self._enabled:
            return None
        claims = self._check(token, permission)
        if claims is None:
            raise InsufficientPermission(_permission_name(permission))
        return claims

    def _check(self, token: str | None, permission: Permission | str) -> TokenClaims | None:
        if not token:
            return None
        try:
            claims = self._tokens.verify(token)
        except InvalidToken as exc:
            logger.debug("Permission check failed token verification: %s", exc.reason)
            if self._audit is not None:
                self._audit.append(
                    AuditAction.TOKEN_VALIDATION_FAILED,
                    None,
                    None,
                    {"reason": exc.reason, "context": "permission_check"},
                )
            return None
        if _permission_name(permission) not in claims.permissions:
            return None
        return claims


def _permission_name(permission: Permission | str) -> str:
    return permission.value if isinstance(permission, Permission) else str(permission)
