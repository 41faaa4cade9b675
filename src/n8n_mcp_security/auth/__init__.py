"""Authentication and authorization.

Users, sliding sessions, signed bearer tokens and the role permission table.
"""

from n8n_mcp_security.auth.models import Permission, Role, Session, TokenClaims, User
from n8n_mcp_security.auth.permissions import (
    ROLE_PERMISSIONS,
    PermissionEngine,
    check_role_table_closure,
    permissions_for,
)
from n8n_mcp_security.auth.sessions import SessionStore
from n8n_mcp_security.auth.tokens import TokenService
from n8n_mcp_security.auth.users import UserDirectory

__all__ = [
    "Permission",
    "PermissionEngine",
    "ROLE_PERMISSIONS",
    "Role",
    "Session",
    "SessionStore",
    "TokenClaims",
    "TokenService",
    "User",
    "UserDirectory",
    "check_role_table_closure",
    "permissions_for",
]
