"""Password reset, password change and email verification.

Recovery tokens are random hex strings stored on the identity row. Each is
single use (cleared on success) and time boxed (reset tokens for one hour,
verification tokens for a day by default).

`issue_reset_token` tells its caller whether the email exists (it returns
None when it doesn't). Callers facing the outside world must not pass that
on; `request_password_reset` answers with the same message either way and
passes the token to an injected delivery callable (usually a mailer).
"""

from __future__ import annotations

import logging
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from meeton_identity.auth.passwords import hash_password, verify_password
from meeton_identity.auth.refresh_store import RefreshTokenStore
from meeton_identity.auth.tokens import Clock
from meeton_identity.config import Settings
from meeton_identity.database.connection import run_with_deadline
from meeton_identity.database.models import Identity, utc_now
from meeton_identity.errors import (
    InvalidCredentialError,
    InvalidOrExpiredTokenError,
    NotFoundError,
    StorageError,
)

logger = logging.getLogger(__name__)

RESET_REQUESTED_MESSAGE = "If this email is registered, you will receive reset instructions"

# Receives (email, token) for a freshly issued reset token
ResetDelivery = Callable[[str, str], Awaitable[None]]


def _new_recovery_token() -> str:
    return secrets.token_hex(32)


class CredentialRecovery:
    """Issues and redeems single-use recovery tokens."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        refresh_store: RefreshTokenStore,
        settings: Settings,
        clock: Clock = utc_now,
        deliver_reset: ResetDelivery | None = None,
    ):
        self._session_factory = session_factory
        self._refresh_store = refresh_store
        self._settings = settings
        self._clock = clock
        self._deliver_reset = deliver_reset

    async def _bounded(self, operation):
        try:
            return await run_with_deadline(operation, self._settings.storage_timeout_seconds)
        except SQLAlchemyError as e:
            logger.error("Credential recovery storage failure", exc_info=True)
            raise StorageError("Credential storage unavailable") from e

    # -------------------------------------------------------------------------
    # Password reset
    # -------------------------------------------------------------------------

    async def issue_reset_token(self, email: str) -> str | None:
        """Create a password reset token, replacing any earlier one.

        Args:
            email: Email address of the account

        Returns:
            The token, or None if no identity has this email (nothing is written)
        """
        return await self._bounded(self._issue_reset_token(email.strip().lower()))

    async def _issue_reset_token(self, email: str) -> str | None:
        async with self._session_factory() as session:
            async with session.begin():
                identity = await session.scalar(
                    select(Identity).where(Identity.email == email)
                )
                if identity is None:
                    return None

                token = _new_recovery_token()
                identity.reset_password_token = token
                identity.reset_password_expires_at = self._clock() + timedelta(
                    seconds=self._settings.reset_token_ttl_seconds
                )

        logger.info(f"Password reset token issued for {identity.id}")
        return token

    async def request_password_reset(self, email: str) -> str:
        """Forgot-password entry point that never reveals whether an email exists.

        A fresh token is handed to the configured delivery callable. Delivery
        failures are logged and do not change the answer.

        Returns:
            The same confirmation message for known and unknown emails
        """
        email = email.strip().lower()
        token = await self.issue_reset_token(email)
        if token is None:
            logger.info("Password reset requested for unknown email")
        elif self._deliver_reset is None:
            logger.warning("Password reset token issued but no delivery is configured")
        else:
            try:
                await self._deliver_reset(email, token)
            except Exception:
                logger.error("Password reset delivery failed", exc_info=True)
        return RESET_REQUESTED_MESSAGE

    async def redeem_reset_token(self, token: str, new_password: str) -> None:
        """Set a new password using a reset token.

        All refresh tokens of the identity are revoked, forcing re-login on
        every device.

        Raises:
            InvalidOrExpiredTokenError: Token unknown, already used or expired
        """
        await self._bounded(self._redeem_reset_token(token, new_password))

    async def _redeem_reset_token(self, token: str, new_password: str) -> None:
        if not token:
            raise InvalidOrExpiredTokenError("Invalid or expired reset token")

        now = self._clock()
        async with self._session_factory() as session:
            identity_id = await session.scalar(
                select(Identity.id).where(
                    Identity.reset_password_token == token,
                    Identity.reset_password_expires_at > now,
                )
            )
        if identity_id is None:
            raise InvalidOrExpiredTokenError("Invalid or expired reset token")

        password_hash = await hash_password(new_password, self._settings.password_hash_rounds)

        async with self._session_factory() as session:
            async with session.begin():
                if not await self._consume_reset_token(
                    session, identity_id, token, now, password_hash
                ):
                    logger.warning(f"Reset token for {identity_id} was redeemed concurrently")
                    raise InvalidOrExpiredTokenError("Invalid or expired reset token")
                await self._refresh_store.revoke_all(identity_id, session=session)

        logger.info(f"Password reset completed for {identity_id}")

    async def _consume_reset_token(
        self,
        session: AsyncSession,
        identity_id: uuid.UUID,
        token: str,
        now: datetime,
        password_hash: str,
    ) -> bool:
        """Set the new hash and clear the token; True only if this call cleared it."""
        result = await session.execute(
            update(Identity)
            .where(
                Identity.id == identity_id,
                Identity.reset_password_token == token,
                Identity.reset_password_expires_at > now,
            )
            .values(
                password_hash=password_hash,
                reset_password_token=None,
                reset_password_expires_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # -------------------------------------------------------------------------
    # Password change
    # -------------------------------------------------------------------------

    async def change_password(
        self,
        identity_id: uuid.UUID,
        current_password: str,
        new_password: str,
    ) -> None:
        """Change the password of a signed-in identity.

        The most recent refresh token (the caller's session) survives; all
        others are revoked.

        Raises:
            NotFoundError: Identity missing or has no password (Google-only account)
            InvalidCredentialError: current_password is wrong
        """
        await self._bounded(self._change_password(identity_id, current_password, new_password))

    async def _change_password(
        self,
        identity_id: uuid.UUID,
        current_password: str,
        new_password: str,
    ) -> None:
        async with self._session_factory() as session:
            identity = await session.get(Identity, identity_id)
            if identity is None or not identity.password_hash:
                raise NotFoundError("User not found")
            stored_hash = identity.password_hash

        if not await verify_password(current_password, stored_hash):
            logger.warning(f"Password change with wrong current password for {identity_id}")
            raise InvalidCredentialError("Current password is incorrect")

        password_hash = await hash_password(new_password, self._settings.password_hash_rounds)

        async with self._session_factory() as session:
            async with session.begin():
                identity = await session.get(Identity, identity_id)
                if identity is None:
                    raise NotFoundError("User not found")
                identity.password_hash = password_hash
                await session.flush()
                await self._refresh_store.revoke_all_except_most_recent(
                    identity_id, session=session
                )

        logger.info(f"Password changed for {identity_id}")

    # -------------------------------------------------------------------------
    # Email verification
    # -------------------------------------------------------------------------

    async def issue_email_verification_token(self, identity_id: uuid.UUID) -> str:
        """Create an email verification token, replacing any earlier one.

        Raises:
            NotFoundError: Identity does not exist
        """
        return await self._bounded(self._issue_email_verification_token(identity_id))

    async def _issue_email_verification_token(self, identity_id: uuid.UUID) -> str:
        async with self._session_factory() as session:
            async with session.begin():
                identity = await session.get(Identity, identity_id)
                if identity is None:
                    raise NotFoundError("User not found")

                token = _new_recovery_token()
                identity.email_verification_token = token
                identity.email_verification_expires_at = self._clock() + timedelta(
                    seconds=self._settings.email_verification_ttl_seconds
                )

        return token

    async def redeem_email_verification(self, token: str) -> None:
        """Mark the email of the token's identity as verified.

        Raises:
            InvalidOrExpiredTokenError: Token unknown, already used or expired
        """
        await self._bounded(self._redeem_email_verification(token))

    async def _redeem_email_verification(self, token: str) -> None:
        if not token:
            raise InvalidOrExpiredTokenError("Invalid verification token")

        now = self._clock()
        async with self._session_factory() as session:
            async with session.begin():
                identity_id = await session.scalar(
                    select(Identity.id).where(
                        Identity.email_verification_token == token,
                        Identity.email_verification_expires_at > now,
                    )
                )
                if identity_id is None:
                    raise InvalidOrExpiredTokenError("Invalid verification token")

                if not await self._consume_verification_token(session, identity_id, token, now):
                    raise InvalidOrExpiredTokenError("Invalid verification token")

        logger.info(f"Email verified for {identity_id}")

    async def _consume_verification_token(
        self,
        session: AsyncSession,
        identity_id: uuid.UUID,
        token: str,
        now: datetime,
    ) -> bool:
        """Clear a live verification token and stamp the email verified."""
        result = await session.execute(
            update(Identity)
            .where(
                Identity.id == identity_id,
                Identity.email_verification_token == token,
                Identity.email_verification_expires_at > now,
            )
            .values(
                email_verified_at=now,
                email_verification_token=None,
                email_verification_expires_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
