from __future__ import annotations

import pytest
from argon2 import PasswordHasher

from n8n_mcp_security.audit.log import AuditLog
from n8n_mcp_security.auth.permissions import PermissionEngine
from n8n_mcp_security.auth.sessions import SessionStore
from n8n_mcp_security.auth.tokens import TokenService
from n8n_mcp_security.auth.users import UserDirectory
from n8n_mcp_security.core import SecurityCore
from n8n_mcp_security.middleware.rate_limit import SlidingWindowRateLimiter
from n8n_mcp_security.resources.indicators import ResourceIndicatorService
from n8n_mcp_security.telemetry.boundary import MetricsCollector

TEST_JWT_SECRET = "test-secret-key-for-enterprise-testing"
TEST_RESOURCE_SECRET = "test-resource-indicator-secret-key-for-testing"
SESSION_TIMEOUT = 3600.0


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def fast_hasher() -> PasswordHasher:
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sessions(clock: FakeClock) -> SessionStore:
    return SessionStore(SESSION_TIMEOUT, clock=clock)


@pytest.fixture
def tokens(sessions: SessionStore, clock: FakeClock) -> TokenService:
    return TokenService(TEST_JWT_SECRET, sessions, clock=clock)


@pytest.fixture
def users() -> UserDirectory:
    directory = UserDirectory(hasher=fast_hasher())
    directory.provision(
        "admin", "admin@test.com", "admin", "default", password="admin123", user_id="admin-001"
    )
    directory.provision(
        "alice", "alice@test.com", "developer", "default", password="dev123", user_id="dev-001"
    )
    directory.provision(
        "victor", "viewer@test.com", "viewer", "tenant-a", password="viewer123",
        user_id="viewer-001",
    )
    directory.provision(
        "gwen", "guest@test.com", "guest", "tenant-a", password="guest123", user_id="guest-001"
    )
    return directory


@pytest.fixture
def audit(clock: FakeClock) -> AuditLog:
    return AuditLog(100, clock=clock)


@pytest.fixture
def indicators(tokens: TokenService, audit: AuditLog, clock: FakeClock) -> ResourceIndicatorService:
    return ResourceIndicatorService(
        TEST_RESOURCE_SECRET, tokens, server_id="server-test", audit=audit, clock=clock
    )


@pytest.fixture
def core(
    users: UserDirectory,
    sessions: SessionStore,
    tokens: TokenService,
    indicators: ResourceIndicatorService,
    audit: AuditLog,
    clock: FakeClock,
) -> SecurityCore:
    return SecurityCore(
        users=users,
        sessions=sessions,
        tokens=tokens,
        permissions=PermissionEngine(tokens, audit=audit),
        indicators=indicators,
        rate_limiter=SlidingWindowRateLimiter(5, 1.0, clock=clock),
        audit=audit,
        metrics=MetricsCollector(10, audit=audit, clock=clock, memory_probe=lambda: 1024),
    )


def login(core: SecurityCore, username: str, password: str) -> str:
    return core.authenticate(username, password).token
