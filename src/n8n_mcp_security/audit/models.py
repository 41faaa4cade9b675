"""Data models for audit trail records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


class AuditAction(str, Enum):
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGOUT = "LOGOUT"
    TOKEN_VALIDATION_FAILED = "TOKEN_VALIDATION_FAILED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    RESOURCE_INDICATOR_GENERATED = "RESOURCE_INDICATOR_GENERATED"
    ERROR_BOUNDARY_TRIGGERED = "ERROR_BOUNDARY_TRIGGERED"
    USER_PROVISIONED = "USER_PROVISIONED"
    USER_ROLE_CHANGED = "USER_ROLE_CHANGED"
    USER_STATUS_CHANGED = "USER_STATUS_CHANGED"


@dataclass(frozen=True)
class AuditLogEntry:
    id: str
    timestamp: datetime
    action: str
    user_id: str
    tenant_id: str
    metadata: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    source: str = "n8n-mcp-server"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action,
            "userId": self.user_id,
            "tenantId": self.tenant_id,
            "metadata": dict(self.metadata),
            "source": self.source,
        }


@dataclass(frozen=True)
class AuditQuery:
    action: str | None = None
    user_id: str | None = None
    tenant_id: str | None = None
    limit: int = 100

    def matches(self, entry: AuditLogEntry) -> bool:
        if self.action is not None and entry.action != self.action:
            return False
        if self.user_id is not None and entry.user_id != self.user_id:
            return False
        if self.tenant_id is not None and entry.tenant_id != self.tenant_id:
            return False
        return True
