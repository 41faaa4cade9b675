"""Signed, audience-scoped resource indicators.

An indicator is a stable identifier for a ``(resource type, resource id)``
pair, plus a server-side record that ties it to the audience it was issued
for. The record is HMAC-signed over a fixed field order and re-verified on
every validation, so edits to a stored record are reported as tampering.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import secrets
import threading
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Callable

from n8n_mcp_security.audit.models import AuditAction
from n8n_mcp_security.auth.models import Permission, TokenClaims
from n8n_mcp_security.errors import InvalidToken, ResourceIndicatorInvalid, ValidationError
from n8n_mcp_security.utils.masking import sanitize_log_value
from n8n_mcp_security.utils.serialization import canonical_json
from n8n_mcp_security.utils.time import epoch_seconds, to_millis

if TYPE_CHECKING:
    from n8n_mcp_security.audit.log import AuditLog
    from n8n_mcp_security.auth.tokens import TokenService

logger = logging.getLogger(__name__)

RESOURCE_NAMESPACE = "urn:n8n:mcp:server"
INDICATOR_VERSION = "1.0.0"
PUBLIC_AUDIENCE = "public"

REASON_NOT_FOUND = "not found"
REASON_TAMPERED = "tampered"
REASON_EXPIRED = "expired"
REASON_AUTH_REQUIRED = "authentication required"
REASON_INSUFFICIENT = "insufficient permissions"

_RESOURCE_TYPE_RE = re.compile(r"^[a-z][a-z0-9_-]{0,63}$")
_MAX_RESOURCE_ID_LENGTH = 256

# Capabilities a granted permission confers on each resource type.
CAPABILITY_MAP: Mapping[str, Mapping[Permission, frozenset[str]]] = MappingProxyType(
    {
        "workflow": MappingProxyType(
            {
                Permission.VIEW_WORKFLOW: frozenset({"read"}),
                Permission.CREATE_WORKFLOW: frozenset({"read", "create"}),
                Permission.UPDATE_WORKFLOW: frozenset({"read", "update"}),
                Permission.DELETE_WORKFLOW: frozenset({"delete"}),
                Permission.EXECUTE_WORKFLOW: frozenset({"read", "execute"}),
            }
        ),
        "execution": MappingProxyType(
            {
                Permission.VIEW_WORKFLOW: frozenset({"read"}),
                Permission.EXECUTE_WORKFLOW: frozenset({"read", "create"}),
                Permission.DELETE_WORKFLOW: frozenset({"delete"}),
            }
        ),
        "template": MappingProxyType(
            {
                Permission.VIEW_WORKFLOW: frozenset({"read"}),
                Permission.MANAGE_TEMPLATES: frozenset({"read", "create", "update", "delete"}),
            }
        ),
        "user": MappingProxyType(
            {Permission.MANAGE_USERS: frozenset({"read", "create", "update", "delete"})}
        ),
        "audit": MappingProxyType({Permission.VIEW_AUDIT_LOGS: frozenset({"read"})}),
    }
)


def derive_indicator(resource_type: str, resource_id: str) -> str:
    """Deterministic name-based identifier for a resource."""
    resource_uri = f"{RESOURCE_NAMESPACE}:{resource_type}:{resource_id}"
    return str(uuid.uuid5(uuid.NAMESPACE_DNS, resource_uri))


def capabilities_for(resource_type: str, permissions: frozenset[str]) -> list[str]:
    granted: set[str] = set()
    for permission, capabilities in CAPABILITY_MAP.get(resource_type, {}).items():
        if permission.value in permissions:
            granted |= capabilities
    return sorted(granted)


@dataclass(frozen=True)
class ResourceIndicator:
    indicator: str
    resource_type: str
    resource_id: str
    audience: str
    timestamp: int  # epoch milliseconds
    nonce: str
    server_id: str
    version: str
    signature: str = field(repr=False)

    def signing_fields(self) -> tuple[str, str, str, str, int, str, str, str]:
        return (
            self.indicator,
            self.resource_type,
            self.resource_id,
            self.audience,
            self.timestamp,
            self.nonce,
            self.server_id,
            self.version,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "indicator": self.indicator,
            "resourceType": self.resource_type,
            "resourceId": self.resource_id,
            "audience": self.audience,
            "timestamp": self.timestamp,
            "nonce": self.nonce,
            "serverId": self.server_id,
            "version": self.version,
            "signature": self.signature,
        }


@dataclass(frozen=True)
class IndicatorValidation:
    valid: bool
    permissions: list[str] = field(default_factory=list)
    reason: str | None = None
    resource: ResourceIndicator | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"valid": self.valid, "permissions": list(self.permissions)}
        if self.reason is not None:
            result["reason"] = self.reason
        if self.resource is not None:
            result["resourceType"] = self.resource.resource_type
            result["resourceId"] = self.resource.resource_id
        return result


class ResourceIndicatorService:
    """
    Issues and validates resource indicators.

    Validation failures carry distinguishable reasons. They are safe to
    report because the indicator itself is opaque and unguessable.
    """

    def __init__(
        self,
        secret: str,
        tokens: "TokenService",
        *,
        server_id: str,
        ttl_seconds: float = 24 * 3600,
        audit: "AuditLog | None" = None,
        enabled: bool = True,
        clock: Callable[[], float] = epoch_seconds,
    ) -> None:
        if not secret or not secret.strip():
            raise ValueError("Resource indicator secret must not be empty")
        self._key = secret.encode("utf-8")
        self._tokens = tokens
        self._server_id = server_id
        self._ttl_millis = to_millis(ttl_seconds)
        self._audit = audit
        self._enabled = enabled
        self._clock = clock
        self._records: dict[str, ResourceIndicator] = {}
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._enabled

    def generate(
        self, resource_type: str, resource_id: str, token: str | None = None
    ) -> ResourceIndicator:
        _validate_resource(resource_type, resource_id)
        claims = self._claims_or_none(token)
        audience = claims.audience_key if claims else PUBLIC_AUDIENCE

        unsigned = ResourceIndicator(
            indicator=derive_indicator(resource_type, resource_id),
            resource_type=resource_type,
            resource_id=resource_id,
            audience=audience,
            timestamp=to_millis(self._clock()),
            nonce=secrets.token_hex(16),
            server_id=self._server_id,
            version=INDICATOR_VERSION,
            signature="",
        )
        record = replace(unsigned, signature=self._sign(unsigned))

        with self._lock:
            current = self._records.get(record.indicator)
            if (
                current is not None
                and current.audience != audience
                and not self._is_expired(current, record.timestamp)
            ):
                raise ValidationError(
                    f"indicator for {resource_type}/{resource_id} is already issued "
                    "to another audience"
                )
            self._records[record.indicator] = record

        if self._audit is not None:
            self._audit.append(
                AuditAction.RESOURCE_INDICATOR_GENERATED,
                claims.user_id if claims else None,
                claims.tenant_id if claims else None,
                {
                    "indicator": record.indicator,
                    "resourceType": resource_type,
                    "resourceId": resource_id,
                    "audience": audience,
                },
            )
        return record

    def validate(self, indicator: str, token: str | None = None) -> IndicatorValidation:
        claims = self._claims_or_none(token)

        with self._lock:
            record = self._records.get(indicator)

        if not self._enabled:
            permissions = (
                capabilities_for(_type_of(record), claims.permissions) if claims else []
            )
            return IndicatorValidation(valid=True, permissions=permissions)

        if record is None:
            return self._reject(indicator, REASON_NOT_FOUND)

        if not hmac.compare_digest(self._sign(record), record.signature):
            return self._reject(indicator, REASON_TAMPERED)

        if self._is_expired(record, to_millis(self._clock())):
            return self._reject(indicator, REASON_EXPIRED)

        if record.audience != PUBLIC_AUDIENCE:
            if claims is None:
                return self._reject(indicator, REASON_AUTH_REQUIRED)
            if claims.audience_key != record.audience and not claims.is_admin:
                return self._reject(indicator, REASON_INSUFFICIENT)

        if claims is None:
            permissions = ["read"]
        else:
            permissions = capabilities_for(record.resource_type, claims.permissions)
        return IndicatorValidation(valid=True, permissions=permissions, resource=record)

    def validate_or_raise(self, indicator: str, token: str | None = None) -> IndicatorValidation:
        result = self.validate(indicator, token)
        if not result.valid:
            raise ResourceIndicatorInvalid(result.reason or REASON_NOT_FOUND)
        return result

    def get(self, indicator: str) -> ResourceIndicator | None:
        with self._lock:
            return self._records.get(indicator)

    def revoke(self, indicator: str) -> bool:
        with self._lock:
            return self._records.pop(indicator, None) is not None

    def purge_expired(self) -> int:
        now_millis = to_millis(self._clock())
        with self._lock:
            doomed = [
                key for key, rec in self._records.items() if self._is_expired(rec, now_millis)
            ]
            for key in doomed:
                del self._records[key]
        return len(doomed)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _is_expired(self, record: ResourceIndicator, now_millis: int) -> bool:
        return now_millis - record.timestamp > self._ttl_millis

    def _sign(self, record: ResourceIndicator) -> str:
        payload = canonical_json(record.signing_fields())
        return hmac.new(self._key, payload, hashlib.sha256).hexdigest()

    def _claims_or_none(self, token: str | None) -> TokenClaims | None:
        if not token:
            return None
        try:
            return self._tokens.verify(token)
        except InvalidToken as exc:
            logger.debug("Ignoring unverifiable token for resource indicator: %s", exc.reason)
            if self._audit is not None:
                self._audit.append(
                    AuditAction.TOKEN_VALIDATION_FAILED,
                    None,
                    None,
                    {"reason": exc.reason, "context": "resource_indicator"},
                )
            return None

    @staticmethod
    def _reject(indicator: str, reason: str) -> IndicatorValidation:
        logger.warning(
            "Resource indicator %s rejected: %s", sanitize_log_value(str(indicator)[:64]), reason
        )
        return IndicatorValidation(valid=False, reason=reason)


def _validate_resource(resource_type: str, resource_id: str) -> None:
    if not isinstance(resource_type, str) or not _RESOURCE_TYPE_RE.match(resource_type):
        raise ValidationError(f"invalid resource type: {resource_type!r}")
    if not isinstance(resource_id, str) or not resource_id.strip():
        raise ValidationError("resource id is required")
    if len(resource_id) > _MAX_RESOURCE_ID_LENGTH:
        raise ValidationError(
            f"resource id exceeds {_MAX_RESOURCE_ID_LENGTH} characters"
        )


def _type_of(record: ResourceIndicator | None) -> str:
    return record.resource_type if record else ""
