"""Federated identity reconciliation.

Maps a Google profile onto a local identity, creating one on first login.

## Lookup Rules

1. An identity holding the Google id wins.
2. Otherwise an identity holding the email is linked to the Google id.
3. If the Google id and the email point at two *different* identities,
   the login is refused with `ConflictError`; accounts are never merged
   implicitly. The same applies when the email's identity is already
   linked to another Google account.

## Creation Races

Two first logins for the same person can race. The loser's insert trips a
unique constraint (Google id, email or handle); the whole lookup-or-create
is then retried a bounded number of times, and on retry the lookup finds
the winner's row. So each external identity gets exactly one account.
"""

from __future__ import annotations

import logging
from urllib.parse import quote

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from meeton_identity.auth.google import FederatedProfile
from meeton_identity.auth.handles import generate_handle
from meeton_identity.auth.tokens import Clock
from meeton_identity.database.models import Identity, utc_now
from meeton_identity.errors import AuthenticationFailedError, ConflictError

logger = logging.getLogger(__name__)

CREATE_ATTEMPTS = 3
DEFAULT_AVATAR_URL = (
    "https://ui-avatars.com/api/?name={name}&background=667eea&color=fff&size=150"
)


def default_avatar_url(name: str) -> str:
    """Generated initials avatar for identities without a picture."""
    return DEFAULT_AVATAR_URL.format(name=quote(name, safe=""))


class CreateRaceError(Exception):
    """A concurrent login created a conflicting row first."""


class IdentityReconciler:
    """Resolves federated logins to local identities (create-or-update)."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock = utc_now,
    ):
        self._session_factory = session_factory
        self._clock = clock

    async def reconcile(self, profile: FederatedProfile) -> Identity:
        """Find or create the identity for a provider profile.

        Args:
            profile: Verified profile from the identity provider

        Returns:
            The updated or newly created identity

        Raises:
            ConflictError: Google id and email belong to different identities
            AuthenticationFailedError: Storage failed during lookup or create
        """
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(CreateRaceError),
                stop=stop_after_attempt(CREATE_ATTEMPTS),
                reraise=True,
            ):
                with attempt:
                    return await self._reconcile_once(profile)
        except (SQLAlchemyError, CreateRaceError) as e:
            logger.error(f"Error finding/creating Google identity: {e}", exc_info=True)
            raise AuthenticationFailedError("Failed to authenticate with Google") from e

    async def _reconcile_once(self, profile: FederatedProfile) -> Identity:
        now = self._clock()
        email = profile.email.strip().lower()

        async with self._session_factory() as session:
            async with session.begin():
                by_provider = await session.scalar(
                    select(Identity).where(Identity.google_id == profile.provider_id)
                )
                by_email = await session.scalar(
                    select(Identity).where(Identity.email == email)
                )

                if by_provider is not None and by_email is not None and by_provider.id != by_email.id:
                    logger.warning(
                        f"Google id {profile.provider_id} and {email} belong to different identities"
                    )
                    raise ConflictError(
                        "This email is already linked to another account", field="email"
                    )
                if (
                    by_provider is None
                    and by_email is not None
                    and by_email.google_id not in (None, profile.provider_id)
                ):
                    raise ConflictError(
                        "This email is already linked to another Google account",
                        field="email",
                    )

                identity = by_provider or by_email
                if identity is not None:
                    identity.google_id = profile.provider_id
                    identity.email = email
                    if profile.display_name:
                        identity.display_name = profile.display_name
                    if profile.avatar_url:
                        identity.avatar_url = profile.avatar_url
                    if profile.email_verified and identity.email_verified_at is None:
                        identity.email_verified_at = now
                    identity.last_active_at = now
                    created = False
                else:
                    handle = await generate_handle(session, email, profile.display_name)
                    identity = Identity(
                        google_id=profile.provider_id,
                        email=email,
                        display_name=profile.display_name,
                        handle=handle,
                        avatar_url=profile.avatar_url
                        or default_avatar_url(profile.display_name or handle),
                        email_verified_at=now if profile.email_verified else None,
                        onboarding_completed=False,
                        last_active_at=now,
                    )
                    session.add(identity)
                    created = True

                try:
                    await session.flush()
                except IntegrityError as e:
                    logger.info(f"Concurrent login for {email} detected, retrying")
                    raise CreateRaceError(str(e)) from e

        if created:
            logger.info(f"Created identity {identity.handle} from Google login")
        return identity
