"""Append-only, capacity-bounded audit trail."""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Mapping

from n8n_mcp_security.audit.models import AuditLogEntry, AuditQuery
from n8n_mcp_security.errors import ValidationError
from n8n_mcp_security.utils.masking import redact_sensitive_fields, sanitize_log_value
from n8n_mcp_security.utils.time import epoch_seconds, from_epoch

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 10_000


class AuditLog:
    """
    In-memory audit trail.

    Entries are write-once. Once ``capacity`` is exceeded the oldest entries
    are dropped, so callers that need durable retention must ship entries
    elsewhere as they are written. The log does no tenant scoping of its own;
    callers restrict queries to the tenant they are allowed to see.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        *,
        source: str = "n8n-mcp-server",
        enabled: bool = True,
        clock: Callable[[], float] = epoch_seconds,
    ) -> None:
        if capacity < 1:
            raise ValueError("Audit log capacity must be at least 1")
        self._entries: deque[AuditLogEntry] = deque(maxlen=capacity)
        self._capacity = capacity
        self._source = source
        self._enabled = enabled
        self._clock = clock
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def enabled(self) -> bool:
        return self._enabled

    def append(
        self,
        action: str | Enum,
        user_id: str | None,
        tenant_id: str | None,
        metadata: Mapping[str, Any] | None = None,
        source: str | None = None,
    ) -> AuditLogEntry | None:
        """Record an event. Returns None when audit logging is disabled."""
        if not self._enabled:
            return None
        action_name = action.value if isinstance(action, Enum) else str(action)
        if not action_name:
            raise ValidationError("audit action is required")

        masked = redact_sensitive_fields(dict(metadata or {}), mask="***MASKED***")
        entry = AuditLogEntry(
            id=str(uuid.uuid4()),
            timestamp=from_epoch(self._clock()),
            action=action_name,
            user_id=user_id or "anonymous",
            tenant_id=tenant_id or "default",
            metadata=MappingProxyType(masked),
            source=source or self._source,
        )
        with self._lock:
            # deque(maxlen=...) drops from the left once full.
            self._entries.append(entry)

        logger.info(
            "AUDIT action=%s user_id=%s tenant_id=%s entry_id=%s",
            sanitize_log_value(entry.action),
            sanitize_log_value(entry.user_id),
            sanitize_log_value(entry.tenant_id),
            entry.id,
        )
        return entry

    def query(self, filters: AuditQuery | None = None) -> list[AuditLogEntry]:
        """Return matching entries newest-first, truncated to ``filters.limit``."""
        filters = filters or AuditQuery()
        if filters.limit < 1:
            raise ValidationError("limit must be at least 1")
        with self._lock:
            snapshot = list(self._entries)
        matches = [entry for entry in reversed(snapshot) if filters.matches(entry)]
        # Stable sort keeps later appends first when timestamps tie.
        matches.sort(key=lambda entry: entry.timestamp, reverse=True)
        return matches[: filters.limit]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
