"""Error taxonomy for the security core.

Every error carries a machine-readable ``code``. Messages are safe to return
to callers: authentication and token failures are deliberately generic, and
the precise reason is kept on ``reason`` for audit metadata only.
"""

from __future__ import annotations


class SecurityError(Exception):
    """Base class for failures raised by the security core."""

    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.code = code


class AuthenticationFailed(SecurityError):
    """Bad credentials. Never says whether the user exists."""

    def __init__(self, reason: str = "invalid_credentials") -> None:
        super().__init__("Invalid credentials", "authentication_failed")
        self.reason = reason


class InvalidToken(SecurityError):
    """Token signature, structure or lifetime check failed."""

    def __init__(self, reason: str = "invalid_token") -> None:
        super().__init__("Invalid or expired token", "invalid_token")
        self.reason = reason


class SessionExpired(InvalidToken):
    """Token is well-formed but its session is gone or timed out."""

    def __init__(self, reason: str = "session_expired") -> None:
        super().__init__(reason)


class InsufficientPermission(SecurityError):
    def __init__(self, required: str) -> None:
        super().__init__(f"Missing permission: {required}", "insufficient_permission")
        self.required = required


class RateLimitExceeded(SecurityError):
    def __init__(self, identifier: str, limit: int, retry_after: int) -> None:
        super().__init__(
            f"Rate limit of {limit} requests exceeded; retry after {retry_after}s",
            "rate_limit_exceeded",
        )
        self.identifier = identifier
        self.limit = limit
        self.retry_after = retry_after


class ResourceIndicatorInvalid(SecurityError):
    """Indicator validation failed; ``reason`` is safe to disclose."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Resource indicator rejected: {reason}", "resource_indicator_invalid")
        self.reason = reason


class ValidationError(SecurityError):
    """Malformed input. Raised before any state is changed."""

    def __init__(self, message: str) -> None:
        super().__init__(message, "validation_error")
