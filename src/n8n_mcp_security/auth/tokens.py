"""Signed bearer tokens bound to server-side sessions."""

from __future__ import annotations

import logging
from typing import Callable

import jwt

from n8n_mcp_security.auth.models import REQUIRED_CLAIMS, TokenClaims, User
from n8n_mcp_security.auth.permissions import permissions_for
from n8n_mcp_security.auth.sessions import SessionStore
from n8n_mcp_security.errors import InvalidToken, SessionExpired
from n8n_mcp_security.utils.time import epoch_seconds

logger = logging.getLogger(__name__)

_ALGORITHM = "HS256"


class TokenService:
    """
    Issues and verifies HS256 tokens.

    A token is accepted only while its signature verifies, its ``exp`` has not
    passed and its ``sessionId`` still resolves to a live session. Every
    successful verification extends that session.
    """

    def __init__(
        self,
        secret: str,
        sessions: SessionStore,
        *,
        expires_in_seconds: float = 24 * 3600,
        issuer: str = "n8n-mcp-server",
        audience: str = "n8n-mcp-server",
        clock: Callable[[], float] = epoch_seconds,
    ) -> None:
        if not secret or not secret.strip():
            raise ValueError("Token signing secret must not be empty")
        if expires_in_seconds <= 0:
            raise ValueError("Token lifetime must be positive")
        self._secret = secret
        self._sessions = sessions
        self._expires_in = expires_in_seconds
        self._issuer = issuer
        self._audience = audience
        self._clock = clock

    def issue(self, user: User, session_id: str) -> str:
        now = int(self._clock())
        payload = {
            "userId": user.id,
            "username": user.username,
            "role": user.role.value,
            "tenantId": user.tenant_id,
            "sessionId": session_id,
            "permissions": sorted(p.value for p in permissions_for(user.role)),
            "iat": now,
            "exp": now + int(self._expires_in),
            "iss": self._issuer,
            "aud": self._audience,
            "sub": user.id,
        }
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM)

    def decode(self, token: str) -> TokenClaims:
        """Check signature, lifetime and claim shape without touching the session."""
        if not token or not isinstance(token, str):
            raise InvalidToken("missing_token")
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[_ALGORITHM],
                audience=self._audience,
                issuer=self._issuer,
                options={
                    "require": list(REQUIRED_CLAIMS),
                    "verify_exp": False,
                    "verify_iat": False,
                },
            )
        except jwt.PyJWTError as exc:
            raise InvalidToken(f"malformed_or_unsigned: {type(exc).__name__}") from exc

        try:
            claims = TokenClaims.from_payload(payload)
        except ValueError as exc:
            raise InvalidToken(f"bad_claims: {exc}") from exc

        # Expiry is checked against the injected clock rather than PyJWT's.
        if self._clock() >= claims.expires_at:
            raise InvalidToken("token_expired")
        return claims

    def verify(self, token: str) -> TokenClaims:
        claims = self.decode(token)
        if self._sessions.touch(claims.session_id) is None:
            raise SessionExpired()
        return claims
