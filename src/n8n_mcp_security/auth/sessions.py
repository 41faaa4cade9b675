"""Server-side session records with sliding expiry."""

from __future__ import annotations

import logging
import secrets
import threading
from typing import Callable

from n8n_mcp_security.auth.models import Session
from n8n_mcp_security.utils.time import epoch_seconds, to_millis

logger = logging.getLogger(__name__)


class SessionStore:
    """
    In-memory session table keyed by session id.

    A session's ``expires_at`` is pushed to ``now + timeout`` every time it is
    touched, so the timeout measures inactivity rather than time since login.
    Expired sessions are dropped lazily when looked up, or in bulk by
    ``sweep_expired``.
    """

    def __init__(
        self,
        timeout_seconds: float,
        clock: Callable[[], float] = epoch_seconds,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("Session timeout must be positive")
        self._timeout = float(timeout_seconds)
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    @property
    def timeout_seconds(self) -> float:
        return self._timeout

    def create(self, user_id: str) -> Session:
        now = self._clock()
        session = Session(
            session_id=self._new_session_id(user_id, now),
            user_id=user_id,
            created_at=now,
            last_activity=now,
            expires_at=now + self._timeout,
        )
        with self._lock:
            self._sessions[session.session_id] = session
        logger.debug("Session created for user %s", user_id)
        return session

    def get(self, session_id: str) -> Session | None:
        """Return the live session or None, dropping it if it has expired."""
        with self._lock:
            return self._live_unlocked(session_id, self._clock())

    def touch(self, session_id: str) -> Session | None:
        """Record activity and extend expiry. Returns None if not live."""
        with self._lock:
            now = self._clock()
            session = self._live_unlocked(session_id, now)
            if session is None:
                return None
            session.last_activity = now
            session.expires_at = now + self._timeout
            return session

    def is_live(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            return session is not None and not session.is_expired(self._clock())

    def invalidate(self, session_id: str) -> bool:
        """Remove a session. Returns whether one was present."""
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def invalidate_user(self, user_id: str) -> int:
        with self._lock:
            doomed = [sid for sid, s in self._sessions.items() if s.user_id == user_id]
            for sid in doomed:
                del self._sessions[sid]
        if doomed:
            logger.info("Invalidated %d session(s) for user %s", len(doomed), user_id)
        return len(doomed)

    def sweep_expired(self) -> int:
        with self._lock:
            now = self._clock()
            doomed = [sid for sid, s in self._sessions.items() if s.is_expired(now)]
            for sid in doomed:
                del self._sessions[sid]
        return len(doomed)

    def __len__(self) -> int:
        return len(self._sessions)

    def _live_unlocked(self, session_id: str, now: float) -> Session | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if session.is_expired(now):
            del self._sessions[session_id]
            return None
        return session

    @staticmethod
    def _new_session_id(user_id: str, now: float) -> str:
        return f"{user_id}-{to_millis(now)}-{secrets.token_hex(16)}"
