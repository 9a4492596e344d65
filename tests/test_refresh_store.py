"""Tests for refresh-token persistence, rotation and revocation."""

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from meeton_identity.auth.refresh_store import RefreshTokenStore
from meeton_identity.database.connection import create_session_factory
from meeton_identity.database.models import RefreshToken
from meeton_identity.errors import (
    ExpiredCredentialError,
    InvalidCredentialError,
    StorageError,
)


async def stored_tokens(session_factory) -> set[str]:
    async with session_factory() as session:
        return set(await session.scalars(select(RefreshToken.token)))


class TestPersist:
    """Tests for storing refresh tokens."""

    @pytest.mark.asyncio
    async def test_persist_sets_expiry(self, store, issuer, identity, clock):
        """Test that the row expiry follows REFRESH_TOKEN_EXPIRY."""
        token = issuer.issue_refresh()
        row = await store.persist(identity.id, token)

        assert row.identity_id == identity.id
        assert row.expires_at == issuer.refresh_expires_at(clock())

    @pytest.mark.asyncio
    async def test_persist_collects_owner_expired_rows(
        self, store, issuer, identity, clock, session_factory
    ):
        """Test that writing a token deletes the owner's expired ones."""
        stale = issuer.issue_refresh()
        await store.persist(identity.id, stale)

        clock.advance(days=15)
        fresh = issuer.issue_refresh()
        await store.persist(identity.id, fresh)

        assert await stored_tokens(session_factory) == {fresh}


class TestRedeemAndRotate:
    """Tests for single-use rotation."""

    @pytest.mark.asyncio
    async def test_rotation_replaces_token(self, store, issuer, identity, session_factory):
        """Test that the old token dies and a new one takes its place."""
        old = issuer.issue_refresh()
        await store.persist(identity.id, old)

        owner, new = await store.redeem_and_rotate(old)

        assert owner.id == identity.id
        assert new != old
        assert await stored_tokens(session_factory) == {new}

    @pytest.mark.asyncio
    async def test_token_is_single_use(self, store, issuer, identity):
        """Test that a redeemed token cannot be redeemed again."""
        old = issuer.issue_refresh()
        await store.persist(identity.id, old)
        await store.redeem_and_rotate(old)

        with pytest.raises(InvalidCredentialError):
            await store.redeem_and_rotate(old)

    @pytest.mark.asyncio
    async def test_unknown_token(self, store, issuer):
        """Test that a never-stored token is rejected."""
        with pytest.raises(InvalidCredentialError):
            await store.redeem_and_rotate(issuer.issue_refresh())

    @pytest.mark.asyncio
    async def test_expired_token_is_deleted(self, store, issuer, identity, clock):
        """Test that an expired row is rejected and removed."""
        token = issuer.issue_refresh()
        await store.persist(identity.id, token)
        clock.advance(days=14, seconds=1)

        with pytest.raises(ExpiredCredentialError):
            await store.redeem_and_rotate(token)

        # Second attempt finds no row at all
        with pytest.raises(InvalidCredentialError) as exc_info:
            await store.redeem_and_rotate(token)
        assert not isinstance(exc_info.value, ExpiredCredentialError)

    @pytest.mark.asyncio
    async def test_token_valid_at_exact_expiry(self, store, issuer, identity, clock):
        """Test that a row is still good at the instant it expires."""
        token = issuer.issue_refresh()
        await store.persist(identity.id, token)
        clock.advance(days=14)

        owner, _ = await store.redeem_and_rotate(token)
        assert owner.id == identity.id

    @pytest.mark.asyncio
    async def test_concurrent_redemption_has_one_winner(
        self, store, issuer, identity, session_factory, monkeypatch
    ):
        """Test two redemptions of one token: exactly one succeeds.

        The first redemption is paused right before it deletes the old row
        while a second redemption of the same token runs to completion.
        """
        old = issuer.issue_refresh()
        await store.persist(identity.id, old)

        real_consume = store._consume
        rival_results = []
        calls = 0

        async def racing_consume(session, token):
            nonlocal calls
            calls += 1
            if calls == 1:
                rival_results.append(await store.redeem_and_rotate(old))
            return await real_consume(session, token)

        monkeypatch.setattr(store, "_consume", racing_consume)

        with pytest.raises(InvalidCredentialError):
            await store.redeem_and_rotate(old)

        [(owner, winner_token)] = rival_results
        assert owner.id == identity.id
        assert await stored_tokens(session_factory) == {winner_token}


class TestRevocation:
    """Tests for logout and bulk revocation."""

    @pytest.mark.asyncio
    async def test_revoke_single(self, store, issuer, identity, session_factory):
        """Test revoking one token leaves the others."""
        first, second = issuer.issue_refresh(), issuer.issue_refresh()
        await store.persist(identity.id, first)
        await store.persist(identity.id, second)

        await store.revoke(first)

        assert await stored_tokens(session_factory) == {second}

    @pytest.mark.asyncio
    async def test_revoke_unknown_is_silent(self, store, issuer):
        """Test that revoking a token nobody holds is not an error."""
        await store.revoke(issuer.issue_refresh())

    @pytest.mark.asyncio
    async def test_revoke_all(self, store, issuer, identity):
        """Test logout everywhere."""
        for _ in range(3):
            await store.persist(identity.id, issuer.issue_refresh())

        assert await store.revoke_all(identity.id) == 3
        assert await store.active_count(identity.id) == 0

    @pytest.mark.asyncio
    async def test_revoke_all_except_most_recent(
        self, store, issuer, identity, clock, session_factory
    ):
        """Test that only the newest token survives."""
        tokens = []
        for _ in range(3):
            token = issuer.issue_refresh()
            await store.persist(identity.id, token)
            tokens.append(token)
            clock.advance(minutes=1)

        assert await store.revoke_all_except_most_recent(identity.id) == 2
        assert await stored_tokens(session_factory) == {tokens[-1]}

    @pytest.mark.asyncio
    async def test_most_recent_tie_is_deterministic(
        self, store, issuer, identity, session_factory
    ):
        """Test that tokens created in the same instant keep the same survivor."""
        tokens = [issuer.issue_refresh() for _ in range(3)]
        for token in tokens:
            await store.persist(identity.id, token)

        assert await store.revoke_all_except_most_recent(identity.id) == 2
        assert await stored_tokens(session_factory) == {max(tokens)}

    @pytest.mark.asyncio
    async def test_purge_expired(self, store, issuer, identity, clock, session_factory):
        """Test the global sweep removes only expired rows."""
        old = issuer.issue_refresh()
        await store.persist(identity.id, old)
        clock.advance(days=10)
        recent = issuer.issue_refresh()
        await store.persist(identity.id, recent)
        clock.advance(days=5)

        assert await store.purge_expired() == 1
        assert await stored_tokens(session_factory) == {recent}

    @pytest.mark.asyncio
    async def test_active_count_ignores_expired(self, store, issuer, identity, clock):
        """Test that expired rows are not counted as sessions."""
        await store.persist(identity.id, issuer.issue_refresh())
        clock.advance(days=10)
        await store.persist(identity.id, issuer.issue_refresh())

        assert await store.active_count(identity.id) == 2

        clock.advance(days=5)
        assert await store.active_count(identity.id) == 1


class TestStorageFailures:
    """Tests for storage errors surfacing as StorageError."""

    @pytest.mark.asyncio
    async def test_missing_schema(self, tmp_path, issuer, clock, identity):
        """Test that a broken store is reported, not leaked."""
        engine = create_async_engine(
            f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}", poolclass=NullPool
        )
        broken = RefreshTokenStore(create_session_factory(engine), issuer, clock)

        try:
            with pytest.raises(StorageError):
                await broken.persist(identity.id, issuer.issue_refresh())
            with pytest.raises(StorageError):
                await broken.redeem_and_rotate(issuer.issue_refresh())
        finally:
            await engine.dispose()
