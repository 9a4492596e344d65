"""Pytest fixtures for identity engine tests.

This module provides test fixtures that ensure:
1. No external API calls are made (Google userinfo is faked)
2. No real database server; each test gets a fresh SQLite file
3. Isolated test environment with controlled configuration and a frozen clock
"""

import os
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

# Set test environment BEFORE importing application modules
# This ensures no real services are contacted during test collection
os.environ.setdefault("ACCESS_TOKEN_SECRET", "test-access-secret-at-least-32-characters-long")
os.environ.setdefault("REFRESH_TOKEN_SECRET", "test-refresh-secret-at-least-32-characters-long")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PASSWORD_HASH_ROUNDS", "4")
os.environ.setdefault("ENVIRONMENT", "test")

from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from meeton_identity.auth.facade import SessionFacade
from meeton_identity.auth.google import FederatedProfile
from meeton_identity.auth.recovery import CredentialRecovery
from meeton_identity.auth.refresh_store import RefreshTokenStore
from meeton_identity.auth.tokens import TokenIssuer
from meeton_identity.database.connection import create_session_factory
from meeton_identity.database.models import Base, Identity
from meeton_identity.errors import AuthenticationFailedError


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeGoogleVerifier:
    """Stands in for GoogleTokenVerifier; knows a fixed set of tokens."""

    def __init__(self):
        self.profiles: dict[str, FederatedProfile] = {}

    async def verify(self, access_token: str) -> FederatedProfile:
        try:
            return self.profiles[access_token]
        except KeyError:
            raise AuthenticationFailedError("Invalid Google access token") from None


# =============================================================================
# Test Isolation Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def reset_settings_cache():
    """Reset settings cache before each test to ensure clean state."""
    from meeton_identity.config import get_settings
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings():
    """Settings built from the test environment."""
    from meeton_identity.config import get_settings
    return get_settings()


@pytest.fixture
def clock() -> FrozenClock:
    """Clock frozen at a fixed instant."""
    return FrozenClock(datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc))


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh SQLite database with all tables, one connection per session."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'identity.db'}",
        poolclass=NullPool,
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


# =============================================================================
# Service Fixtures
# =============================================================================


@pytest.fixture
def issuer(settings, clock) -> TokenIssuer:
    return TokenIssuer(settings, clock)


@pytest.fixture
def store(session_factory, issuer, clock) -> RefreshTokenStore:
    return RefreshTokenStore(session_factory, issuer, clock)


@pytest.fixture
def google_verifier() -> FakeGoogleVerifier:
    return FakeGoogleVerifier()


@pytest.fixture
def facade(session_factory, settings, clock, issuer, store, google_verifier) -> SessionFacade:
    return SessionFacade(
        session_factory,
        settings,
        clock=clock,
        verifier=google_verifier,
        issuer=issuer,
        refresh_store=store,
    )


@pytest.fixture
def recovery(session_factory, store, settings, clock) -> CredentialRecovery:
    return CredentialRecovery(session_factory, store, settings, clock)


# =============================================================================
# Data Fixtures
# =============================================================================


@pytest.fixture
def google_profile() -> FederatedProfile:
    """Profile Google returns for Jane."""
    return FederatedProfile(
        provider_id="google-123",
        email="jane@example.com",
        display_name="Jane Doe",
        avatar_url="https://example.com/jane.jpg",
        email_verified=True,
    )


@pytest_asyncio.fixture
async def identity(session_factory, clock) -> Identity:
    """A stored identity without a password."""
    async with session_factory() as session:
        async with session.begin():
            identity = Identity(
                email="sam@example.com",
                handle="sam",
                display_name="Sam",
                last_active_at=clock(),
            )
            session.add(identity)
    return identity
