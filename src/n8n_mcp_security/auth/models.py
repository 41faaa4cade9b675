"""Identity records: roles, permissions, users, sessions and token claims."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from n8n_mcp_security.utils.time import utc_now


class Role(str, Enum):
    ADMIN = "admin"
    DEVELOPER = "developer"
    VIEWER = "viewer"
    GUEST = "guest"


class Permission(str, Enum):
    CREATE_WORKFLOW = "create_workflow"
    UPDATE_WORKFLOW = "update_workflow"
    DELETE_WORKFLOW = "delete_workflow"
    EXECUTE_WORKFLOW = "execute_workflow"
    VIEW_WORKFLOW = "view_workflow"
    MANAGE_USERS = "manage_users"
    VIEW_AUDIT_LOGS = "view_audit_logs"
    MANAGE_TEMPLATES = "manage_templates"


@dataclass
class User:
    """A provisioned account.

    Only ``role`` and ``is_active`` change after provisioning, and only through
    an administrator action on the user directory.
    """

    id: str
    username: str
    email: str
    password_hash: str = field(repr=False)
    role: Role
    tenant_id: str
    is_active: bool = True
    created_at: datetime = field(default_factory=utc_now)

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role.value,
            "tenantId": self.tenant_id,
            "isActive": self.is_active,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class Session:
    session_id: str
    user_id: str
    created_at: float
    last_activity: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


# Claims every token issued by this core must carry.
REQUIRED_CLAIMS = (
    "userId",
    "username",
    "role",
    "tenantId",
    "sessionId",
    "permissions",
    "iat",
    "exp",
    "aud",
    "sub",
)


@dataclass(frozen=True)
class TokenClaims:
    """Verified claim set of a bearer token."""

    user_id: str
    username: str
    role: Role
    tenant_id: str
    session_id: str
    permissions: frozenset[str]
    issued_at: int
    expires_at: int
    audience: str
    subject: str

    @property
    def audience_key(self) -> str:
        """``tenantId:role`` pair used to scope resource indicators."""
        return f"{self.tenant_id}:{self.role.value}"

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "TokenClaims":
        """Build claims from a decoded payload, rejecting anything malformed.

        Raises ``ValueError`` with the name of the offending claim.
        """
        missing = [name for name in REQUIRED_CLAIMS if name not in payload]
        if missing:
            raise ValueError(f"missing claims: {', '.join(missing)}")

        for name in ("userId", "username", "tenantId", "sessionId", "sub"):
            if not isinstance(payload[name], str) or not payload[name]:
                raise ValueError(f"claim {name} must be a non-empty string")

        try:
            role = Role(payload["role"])
        except ValueError:
            raise ValueError(f"unknown role: {payload['role']!r}") from None

        permissions = payload["permissions"]
        if not isinstance(permissions, list) or not all(isinstance(p, str) for p in permissions):
            raise ValueError("claim permissions must be a list of strings")

        audience = payload["aud"]
        if isinstance(audience, list):
            audience = audience[0] if audience else ""

        return cls(
            user_id=payload["userId"],
            username=payload["username"],
            role=role,
            tenant_id=payload["tenantId"],
            session_id=payload["sessionId"],
            permissions=frozenset(permissions),
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
            audience=str(audience),
            subject=payload["sub"],
        )
