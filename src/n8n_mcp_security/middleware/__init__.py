"""Admission control for the MCP server."""

from .rate_limit import RateLimitMiddleware, RateLimitResult, SlidingWindowRateLimiter

__all__ = ["RateLimitMiddleware", "RateLimitResult", "SlidingWindowRateLimiter"]
