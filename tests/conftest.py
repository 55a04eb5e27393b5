"""
Pytest Configuration and Shared Fixtures.

This module provides shared fixtures for testing the Chapterguard security
pipeline: a controllable clock, fast bcrypt settings, seeded stores and a
fully wired application.
"""

import time
from collections.abc import Generator

import bcrypt
import pytest
from fastapi.testclient import TestClient

from src.api.main import create_app
from src.config.settings import (
    AuthSettings,
    LockoutSettings,
    RateLimitSettings,
    Settings,
)
from src.core.state_store import MemoryStateStore
from src.security.catalog import Role
from src.security.models import Principal
from src.security.pipeline import SecurityPipeline, build_security_pipeline
from src.security.stores import InMemoryChapterStore, InMemoryUserStore

TEST_SECRET = "test-secret-key-for-unit-tests-only"
PASSWORD = "correct-horse-battery"


# =============================================================================
# Clock
# =============================================================================


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: float | None = None):
        self.now = start if start is not None else float(int(time.time()))

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_clock() -> type[FakeClock]:
    """Factory for clocks starting at a chosen instant."""
    return FakeClock


# =============================================================================
# Settings Fixtures
# =============================================================================


@pytest.fixture
def test_settings() -> Settings:
    """Provide test settings with a fixed secret and cheap bcrypt rounds."""
    return Settings(
        environment="development",
        auth=AuthSettings(jwt_secret=TEST_SECRET, bcrypt_rounds=4),
        lockout=LockoutSettings(max_login_attempts=5, lock_duration_seconds=900),
        rate_limit=RateLimitSettings(),
    )


# =============================================================================
# Principal & Store Fixtures
# =============================================================================


def hash_password(password: str = PASSWORD) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=4)).decode()


@pytest.fixture
def password() -> str:
    return PASSWORD


@pytest.fixture(scope="session")
def password_hash() -> str:
    return hash_password()


@pytest.fixture
def principals(password_hash: str) -> dict[str, Principal]:
    """One principal per role plus a few special accounts, keyed by id."""
    users = [
        Principal(id="u-a", email="a@x.com", role=Role.MEMBER, memberships=frozenset({"ch-1"})),
        Principal(id="u-member", email="member@x.com", role=Role.MEMBER, memberships=frozenset({"ch-1"})),
        Principal(id="u-outsider", email="outsider@x.com", role=Role.MEMBER, memberships=frozenset({"ch-9"})),
        Principal(id="u-coordinator", email="coordinator@x.com", role=Role.COORDINATOR),
        Principal(
            id="u-leader",
            email="leader@x.com",
            role=Role.LEADER,
            delegated_chapters=frozenset({"ch-1"}),
            memberships=frozenset({"ch-1"}),
        ),
        Principal(
            id="u-ambassador",
            email="ambassador@x.com",
            role=Role.AMBASSADOR,
            delegated_chapters=frozenset({"ch-2"}),
        ),
        Principal(id="u-admin", email="admin@x.com", role=Role.ADMIN, is_email_verified=True),
        Principal(id="u-super", email="super@x.com", role=Role.SUPERADMIN, is_email_verified=True),
        Principal(id="u-inactive", email="inactive@x.com", role=Role.MEMBER, is_active=False),
    ]
    return {p.id: p.with_updates(password_hash=password_hash) for p in users}


@pytest.fixture
def user_store(principals: dict[str, Principal]) -> InMemoryUserStore:
    return InMemoryUserStore(principals.values())


@pytest.fixture
def chapter_store(principals: dict[str, Principal]) -> InMemoryChapterStore:
    return InMemoryChapterStore.from_principals(principals.values())


@pytest.fixture
def state_store(clock: FakeClock) -> MemoryStateStore:
    return MemoryStateStore(clock=clock)


# =============================================================================
# Pipeline & App Fixtures
# =============================================================================


@pytest.fixture
def pipeline(
    test_settings: Settings,
    user_store: InMemoryUserStore,
    chapter_store: InMemoryChapterStore,
    state_store: MemoryStateStore,
    clock: FakeClock,
) -> SecurityPipeline:
    return build_security_pipeline(
        settings=test_settings,
        users=user_store,
        chapters=chapter_store,
        store=state_store,
        clock=clock,
    )


@pytest.fixture
def app(
    test_settings: Settings,
    user_store: InMemoryUserStore,
    chapter_store: InMemoryChapterStore,
    state_store: MemoryStateStore,
    clock: FakeClock,
):
    return create_app(
        settings=test_settings,
        user_store=user_store,
        chapter_store=chapter_store,
        state_store=state_store,
        clock=clock,
    )


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    with TestClient(app) as test_client:
        yield test_client
