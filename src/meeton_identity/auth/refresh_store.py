"""Refresh-token persistence, rotation and revocation.

This is the only place that decides whether a refresh token is still good.

## Rotation

`redeem_and_rotate` consumes the old row with a conditional
`DELETE ... WHERE token = :old` and inserts the replacement in the same
transaction. The delete's row count is the arbiter between concurrent
redeemers of the same token: exactly one sees a count of 1 and wins; the
other sees 0, rolls back, and gets `InvalidCredentialError`. At no point
are both tokens valid, and at no point is neither.

## Garbage collection

There is no background sweep. `persist` deletes the owner's expired rows
each time a new one is written; `purge_expired` exists for operators who
want a global sweep from a scheduled job.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from meeton_identity.auth.tokens import Clock, TokenIssuer
from meeton_identity.database.models import Identity, RefreshToken, utc_now
from meeton_identity.errors import (
    ExpiredCredentialError,
    InvalidCredentialError,
    StorageError,
)

logger = logging.getLogger(__name__)


class RefreshTokenStore:
    """Persists, rotates, revokes and garbage-collects refresh tokens.

    Methods that accept `session` join the caller's transaction and leave
    the commit to the caller; without one they run in a transaction of
    their own.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        issuer: TokenIssuer,
        clock: Clock = utc_now,
    ):
        self._session_factory = session_factory
        self._issuer = issuer
        self._clock = clock

    @asynccontextmanager
    async def _transaction(
        self, session: AsyncSession | None = None
    ) -> AsyncGenerator[AsyncSession, None]:
        if session is not None:
            yield session
            return

        async with self._session_factory() as own_session:
            async with own_session.begin():
                yield own_session

    async def persist(
        self,
        identity_id: uuid.UUID,
        token: str,
        session: AsyncSession | None = None,
    ) -> RefreshToken:
        """Store a freshly issued refresh token.

        Also deletes the identity's other rows that have already expired.

        Args:
            identity_id: Owner of the token
            token: The refresh token value
            session: Optional session to join

        Returns:
            The stored row
        """
        now = self._clock()
        row = RefreshToken(
            token=token,
            identity_id=identity_id,
            created_at=now,
            expires_at=self._issuer.refresh_expires_at(now),
        )

        try:
            async with self._transaction(session) as s:
                s.add(row)
                await s.flush()
                await s.execute(
                    delete(RefreshToken).where(
                        RefreshToken.identity_id == identity_id,
                        RefreshToken.expires_at < now,
                        RefreshToken.token != token,
                    )
                )
        except SQLAlchemyError as e:
            logger.error(f"Failed to persist refresh token for {identity_id}", exc_info=True)
            raise StorageError("Could not store refresh token") from e

        return row

    async def _consume(self, session: AsyncSession, token: str) -> bool:
        """Delete a token row; True only for the caller that removed it."""
        result = await session.execute(
            delete(RefreshToken).where(RefreshToken.token == token)
        )
        return result.rowcount == 1

    async def redeem_and_rotate(self, old_token: str) -> tuple[Identity, str]:
        """Exchange a refresh token for a new one.

        Args:
            old_token: The refresh token presented by the client

        Returns:
            Tuple of (owning identity, new refresh token)

        Raises:
            InvalidCredentialError: Unknown, revoked or already-used token
            ExpiredCredentialError: The row existed but had expired (it is deleted)
        """
        now = self._clock()
        expired = False

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    row = await session.get(RefreshToken, old_token)
                    if row is None:
                        raise InvalidCredentialError("Refresh token not found")

                    identity_id = row.identity_id
                    if row.expires_at < now:
                        await self._consume(session, old_token)
                        expired = True
                    else:
                        if not await self._consume(session, old_token):
                            logger.warning(
                                f"Refresh token for {identity_id} was redeemed concurrently"
                            )
                            raise InvalidCredentialError("Refresh token not found")

                        identity = await session.get(Identity, identity_id)
                        if identity is None:
                            raise InvalidCredentialError("Refresh token not found")

                        new_token = self._issuer.issue_refresh()
                        session.add(
                            RefreshToken(
                                token=new_token,
                                identity_id=identity_id,
                                created_at=now,
                                expires_at=self._issuer.refresh_expires_at(now),
                            )
                        )
        except SQLAlchemyError as e:
            logger.error("Refresh token rotation failed", exc_info=True)
            raise StorageError("Could not rotate refresh token") from e

        if expired:
            logger.info(f"Expired refresh token for {identity_id} removed")
            raise ExpiredCredentialError("Refresh token expired")

        logger.info(f"Rotated refresh token for {identity_id}")
        return identity, new_token

    async def revoke(self, token: str, session: AsyncSession | None = None) -> None:
        """Delete a single token. Unknown tokens are ignored."""
        try:
            async with self._transaction(session) as s:
                await self._consume(s, token)
        except SQLAlchemyError as e:
            logger.error("Failed to revoke refresh token", exc_info=True)
            raise StorageError("Could not revoke refresh token") from e

    async def revoke_all(
        self, identity_id: uuid.UUID, session: AsyncSession | None = None
    ) -> int:
        """Delete every token of an identity (logout everywhere).

        Returns:
            Number of tokens removed
        """
        try:
            async with self._transaction(session) as s:
                result = await s.execute(
                    delete(RefreshToken).where(RefreshToken.identity_id == identity_id)
                )
        except SQLAlchemyError as e:
            logger.error(f"Failed to revoke tokens for {identity_id}", exc_info=True)
            raise StorageError("Could not revoke refresh tokens") from e

        logger.info(f"Revoked {result.rowcount} refresh tokens for {identity_id}")
        return result.rowcount

    async def revoke_all_except_most_recent(
        self, identity_id: uuid.UUID, session: AsyncSession | None = None
    ) -> int:
        """Delete every token of an identity except the newest one.

        The newest token is taken to be the caller's current session. Tokens
        created in the same instant are ordered by their value.

        Returns:
            Number of tokens removed
        """
        try:
            async with self._transaction(session) as s:
                newest = await s.scalar(
                    select(RefreshToken.token)
                    .where(RefreshToken.identity_id == identity_id)
                    .order_by(RefreshToken.created_at.desc(), RefreshToken.token.desc())
                    .limit(1)
                )
                stmt = delete(RefreshToken).where(RefreshToken.identity_id == identity_id)
                if newest is not None:
                    stmt = stmt.where(RefreshToken.token != newest)
                result = await s.execute(stmt)
        except SQLAlchemyError as e:
            logger.error(f"Failed to revoke other tokens for {identity_id}", exc_info=True)
            raise StorageError("Could not revoke refresh tokens") from e

        return result.rowcount

    async def active_count(self, identity_id: uuid.UUID) -> int:
        """Number of unexpired tokens an identity holds."""
        now = self._clock()
        try:
            async with self._session_factory() as session:
                count = await session.scalar(
                    select(func.count())
                    .select_from(RefreshToken)
                    .where(
                        RefreshToken.identity_id == identity_id,
                        RefreshToken.expires_at >= now,
                    )
                )
        except SQLAlchemyError as e:
            raise StorageError("Could not count refresh tokens") from e

        return count or 0

    async def purge_expired(self) -> int:
        """Delete every expired token, for all identities."""
        now = self._clock()
        try:
            async with self._transaction() as s:
                result = await s.execute(
                    delete(RefreshToken).where(RefreshToken.expires_at < now)
                )
        except SQLAlchemyError as e:
            logger.error("Failed to purge expired refresh tokens", exc_info=True)
            raise StorageError("Could not purge refresh tokens") from e

        logger.info(f"Purged {result.rowcount} expired refresh tokens")
        return result.rowcount
