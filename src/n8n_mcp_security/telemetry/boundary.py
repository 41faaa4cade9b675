"""Per-operation error boundaries and the rolling metrics store."""

from __future__ import annotations

import logging
import os
import threading
import traceback
import uuid
from collections import OrderedDict, deque
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Literal

import psutil

from n8n_mcp_security.audit.models import AuditAction
from n8n_mcp_security.errors import ValidationError
from n8n_mcp_security.utils.masking import redact_sensitive_fields
from n8n_mcp_security.utils.serialization import serialized_size
from n8n_mcp_security.utils.time import epoch_seconds, to_millis

if TYPE_CHECKING:
    from n8n_mcp_security.audit.log import AuditLog

logger = logging.getLogger(__name__)

BoundaryKind = Literal["error", "warning"]

STATUS_ACTIVE = "active"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

DEFAULT_MAX_BOUNDARIES = 1_000


def current_memory_bytes() -> int:
    """Resident set size of this process."""
    return psutil.Process(os.getpid()).memory_info().rss


@dataclass(frozen=True)
class BoundaryEvent:
    timestamp: float
    kind: str
    message: str
    details: Mapping[str, Any]
    stack: str | None = None


@dataclass
class BoundaryMetrics:
    start_time: float
    memory_usage: int
    request_size: int
    end_time: float | None = None
    duration_ms: int | None = None
    memory_end: int | None = None

    @property
    def memory_delta(self) -> int | None:
        if self.memory_end is None:
            return None
        return self.memory_end - self.memory_usage


@dataclass
class ErrorBoundary:
    id: str
    timestamp: float
    context: dict[str, Any]
    metrics: BoundaryMetrics
    errors: list[BoundaryEvent] = field(default_factory=list)
    warnings: list[BoundaryEvent] = field(default_factory=list)
    status: str = STATUS_ACTIVE

    @property
    def is_open(self) -> bool:
        return self.status == STATUS_ACTIVE

    @property
    def operation(self) -> str:
        return str(self.context.get("operation", "unknown"))


@dataclass(frozen=True)
class MetricRecord:
    boundary_id: str
    operation: str
    timestamp: float
    duration_ms: int
    error_count: int
    warning_count: int
    success: bool
    request_size: int
    memory_delta: int


class MetricsCollector:
    """
    Tracks error boundaries and publishes one metric record per closed boundary.

    Both the boundary table and the metrics store keep at most
    ``max_entries`` items and evict the oldest first.
    """

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_BOUNDARIES,
        *,
        audit: "AuditLog | None" = None,
        clock: Callable[[], float] = epoch_seconds,
        memory_probe: Callable[[], int] = current_memory_bytes,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._max_entries = max_entries
        self._audit = audit
        self._clock = clock
        self._memory_probe = memory_probe
        self._boundaries: OrderedDict[str, ErrorBoundary] = OrderedDict()
        self._metrics: deque[MetricRecord] = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def open(self, context: Mapping[str, Any] | None = None) -> ErrorBoundary:
        now = self._clock()
        context_copy = dict(context or {})
        boundary = ErrorBoundary(
            id=str(uuid.uuid4()),
            timestamp=now,
            context=context_copy,
            metrics=BoundaryMetrics(
                start_time=now,
                memory_usage=self._memory_probe(),
                request_size=serialized_size(context_copy),
            ),
        )
        with self._lock:
            self._boundaries[boundary.id] = boundary
            while len(self._boundaries) > self._max_entries:
                self._boundaries.popitem(last=False)
        return boundary

    def record(
        self,
        boundary: ErrorBoundary,
        kind: BoundaryKind,
        message: str,
        details: Mapping[str, Any] | None = None,
        *,
        stack: str | None = None,
    ) -> BoundaryEvent:
        if kind not in ("error", "warning"):
            raise ValidationError(f"invalid boundary record kind: {kind!r}")
        if not boundary.is_open:
            raise ValidationError(f"boundary {boundary.id} is already closed")

        event = BoundaryEvent(
            timestamp=self._clock(),
            kind=kind,
            message=message,
            details=redact_sensitive_fields(dict(details or {}), mask="***MASKED***"),
            stack=stack,
        )
        with self._lock:
            if kind == "error":
                boundary.errors.append(event)
            else:
                boundary.warnings.append(event)

        if kind == "error":
            logger.warning(
                "Error recorded in boundary %s (%s): %s", boundary.id, boundary.operation, message
            )
            if self._audit is not None:
                self._audit.append(
                    AuditAction.ERROR_BOUNDARY_TRIGGERED,
                    boundary.context.get("user_id"),
                    boundary.context.get("tenant_id"),
                    {
                        "boundaryId": boundary.id,
                        "operation": boundary.operation,
                        "message": message,
                        "details": dict(event.details),
                    },
                )
        return event

    def close(self, boundary: ErrorBoundary, success: bool) -> ErrorBoundary:
        if not boundary.is_open:
            raise ValidationError(f"boundary {boundary.id} is already closed")

        end = self._clock()
        metrics = boundary.metrics
        metrics.end_time = end
        metrics.duration_ms = max(0, to_millis(end - metrics.start_time))
        metrics.memory_end = self._memory_probe()
        boundary.status = STATUS_COMPLETED if success else STATUS_FAILED

        record = MetricRecord(
            boundary_id=boundary.id,
            operation=boundary.operation,
            timestamp=end,
            duration_ms=metrics.duration_ms,
            error_count=len(boundary.errors),
            warning_count=len(boundary.warnings),
            success=success,
            request_size=metrics.request_size,
            memory_delta=metrics.memory_delta or 0,
        )
        with self._lock:
            self._metrics.append(record)
        logger.debug(
            "Boundary %s closed: operation=%s success=%s duration_ms=%d",
            boundary.id,
            boundary.operation,
            success,
            metrics.duration_ms,
        )
        return boundary

    @contextmanager
    def guard(self, context: Mapping[str, Any] | None = None) -> Iterator[ErrorBoundary]:
        """Open a boundary for the ``with`` block and always close it.

        An exception escaping the block is recorded as an error, the boundary
        is closed as failed and the exception is re-raised.
        """
        boundary = self.open(context)
        try:
            yield boundary
        except Exception as exc:
            if boundary.is_open:
                self.record(
                    boundary,
                    "error",
                    str(exc) or type(exc).__name__,
                    {"type": type(exc).__name__},
                    stack=traceback.format_exc(),
                )
                self.close(boundary, success=False)
            raise
        else:
            if boundary.is_open:
                self.close(boundary, success=not boundary.errors)

    def get(self, boundary_id: str) -> ErrorBoundary | None:
        return self._boundaries.get(boundary_id)

    def metrics(self) -> list[MetricRecord]:
        with self._lock:
            return list(self._metrics)

    def summary(self) -> dict[str, Any]:
        records = self.metrics()
        if not records:
            return {
                "count": 0,
                "successRate": None,
                "averageDurationMs": None,
                "errors": 0,
                "warnings": 0,
            }
        successes = sum(1 for r in records if r.success)
        return {
            "count": len(records),
            "successRate": successes / len(records),
            "averageDurationMs": sum(r.duration_ms for r in records) / len(records),
            "errors": sum(r.error_count for r in records),
            "warnings": sum(r.warning_count for r in records),
        }

    def __len__(self) -> int:
        return len(self._boundaries)
