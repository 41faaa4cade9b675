"""Sliding-window rate limiting and its ASGI adapter."""

from __future__ import annotations

import logging
import math
import threading
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from n8n_mcp_security.errors import RateLimitExceeded, ValidationError
from n8n_mcp_security.utils.masking import sanitize_log_value
from n8n_mcp_security.utils.time import epoch_seconds

logger = logging.getLogger(__name__)

_EXEMPT_PATHS = frozenset({"/health", "/ready"})


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_time: float
    retry_after: int = 0

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_time)),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


@dataclass
class RateLimitBucket:
    """Timestamps of admitted requests for one identifier, oldest first."""

    timestamps: deque[float] = field(default_factory=deque)

    def cleanup(self, now: float, window_seconds: float) -> None:
        """Drop timestamps that have fallen out of the trailing window."""
        cutoff = now - window_seconds
        while self.timestamps and self.timestamps[0] <= cutoff:
            self.timestamps.popleft()

    def add_request(self, now: float) -> None:
        self.timestamps.append(now)

    def count(self) -> int:
        return len(self.timestamps)


class SlidingWindowRateLimiter:
    """
    Per-identifier sliding-window admission control.

    The window moves continuously with the clock, so a burst straddling a
    window boundary is still counted against the same trailing window.
    Memory is bounded two ways: buckets idle for a full window are swept
    periodically, and at most ``max_identifiers`` buckets are kept, evicting
    the least recently used.
    """

    def __init__(
        self,
        default_limit: int = 100,
        default_window_seconds: float = 60.0,
        *,
        max_identifiers: int = 10_000,
        clock: Callable[[], float] = epoch_seconds,
    ) -> None:
        if default_limit < 1:
            raise ValueError("default_limit must be at least 1")
        if default_window_seconds <= 0:
            raise ValueError("default_window_seconds must be positive")
        if max_identifiers < 1:
            raise ValueError("max_identifiers must be at least 1")
        self._default_limit = default_limit
        self._default_window = float(default_window_seconds)
        self._max_identifiers = max_identifiers
        self._clock = clock
        self._buckets: OrderedDict[str, RateLimitBucket] = OrderedDict()
        self._windows: dict[str, float] = {}
        self._lock = threading.Lock()
        self._last_cleanup: float = clock()

    def enforce(
        self,
        identifier: str,
        max_requests: int | None = None,
        window_seconds: float | None = None,
    ) -> RateLimitResult:
        if not identifier:
            raise ValidationError("rate limit identifier is required")
        limit = self._default_limit if max_requests is None else max_requests
        window = self._default_window if window_seconds is None else float(window_seconds)
        if limit < 1:
            raise ValidationError("max_requests must be at least 1")
        if window <= 0:
            raise ValidationError("window must be positive")

        with self._lock:
            now = self._clock()
            if now - self._last_cleanup > self._default_window:
                self._cleanup_old_buckets_unlocked(now)
                self._last_cleanup = now

            bucket = self._bucket_unlocked(identifier, window)
            bucket.cleanup(now, window)

            if bucket.count() >= limit:
                reset_time = bucket.timestamps[0] + window
                return RateLimitResult(
                    allowed=False,
                    limit=limit,
                    remaining=0,
                    reset_time=reset_time,
                    retry_after=max(1, math.ceil(reset_time - now)),
                )

            bucket.add_request(now)
            return RateLimitResult(
                allowed=True,
                limit=limit,
                remaining=limit - bucket.count(),
                reset_time=bucket.timestamps[0] + window,
            )

    def enforce_or_raise(
        self,
        identifier: str,
        max_requests: int | None = None,
        window_seconds: float | None = None,
    ) -> RateLimitResult:
        result = self.enforce(identifier, max_requests, window_seconds)
        if not result.allowed:
            logger.warning(
                "Rate limit exceeded for %s (limit=%d)",
                sanitize_log_value(identifier),
                result.limit,
            )
            raise RateLimitExceeded(identifier, result.limit, result.retry_after)
        return result

    def tracked_identifiers(self) -> int:
        return len(self._buckets)

    def reset(self, identifier: str | None = None) -> None:
        with self._lock:
            if identifier is None:
                self._buckets.clear()
                self._windows.clear()
            else:
                self._buckets.pop(identifier, None)
                self._windows.pop(identifier, None)

    def _bucket_unlocked(self, identifier: str, window: float) -> RateLimitBucket:
        bucket = self._buckets.get(identifier)
        if bucket is None:
            bucket = RateLimitBucket()
            self._buckets[identifier] = bucket
            while len(self._buckets) > self._max_identifiers:
                evicted, _ = self._buckets.popitem(last=False)
                self._windows.pop(evicted, None)
        else:
            self._buckets.move_to_end(identifier)
        self._windows[identifier] = window
        return bucket

    def _cleanup_old_buckets_unlocked(self, now: float) -> None:
        """Remove buckets with no activity inside their window. Must be called under lock."""
        keys_to_remove = [
            key
            for key, bucket in self._buckets.items()
            if not bucket.timestamps
            or bucket.timestamps[-1] <= now - self._windows.get(key, self._default_window)
        ]
        for key in keys_to_remove:
            del self._buckets[key]
            self._windows.pop(key, None)


def get_client_ip(request: Request) -> str:
    if request.client:
        return sanitize_log_value(request.client.host)
    return "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Applies the shared limiter to incoming HTTP requests.

    Requests are keyed by ``request.state.user_id`` when an upstream
    authentication step set it, otherwise by client IP.
    """

    EXEMPT_PATHS = _EXEMPT_PATHS

    def __init__(
        self,
        app: Callable,
        limiter: SlidingWindowRateLimiter,
        max_requests: int | None = None,
        window_seconds: float | None = None,
    ) -> None:
        super().__init__(app)
        self.limiter = limiter
        self._max_requests = max_requests
        self._window_seconds = window_seconds

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.EXEMPT_PATHS:
            return await call_next(request)

        user_id = getattr(request.state, "user_id", None)
        key = f"user:{user_id}" if user_id else f"ip:{get_client_ip(request)}"

        result = self.limiter.enforce(key, self._max_requests, self._window_seconds)
        if not result.allowed:
            logger.warning("Rate limit exceeded for %s", sanitize_log_value(key))
            return JSONResponse(
                status_code=429,
                content={
                    "error": "rate_limit_exceeded",
                    "message": "Too many requests",
                    "retryAfter": result.retry_after,
                },
                headers=result.headers(),
            )

        response = await call_next(request)
        for name, value in result.headers().items():
            response.headers[name] = value
        return response
