"""Session entry points used by the rest of the application.

Every sign-in path ends in the same `TokenResponse`: a short-lived access
token, a single-use refresh token and a summary of the identity.

## Wire Shape

```json
{
  "accessToken": "...",
  "refreshToken": "...",
  "expiresIn": 1800,
  "identity": {
    "id": "uuid",
    "email": "jane@example.com",
    "handle": "janedoe",
    "displayName": "Jane Doe",
    "avatarUrl": "https://...",
    "onboardingCompleted": false
  }
}
```

## Statelessness

Logging out deletes refresh tokens only. An access token that was already
handed out stays valid until it expires; that is the price of checking
access tokens without a store lookup.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from meeton_identity.auth.google import FederatedProfile, GoogleTokenVerifier
from meeton_identity.auth.handles import is_handle_available
from meeton_identity.auth.passwords import hash_password, verify_password
from meeton_identity.auth.reconciler import IdentityReconciler, default_avatar_url
from meeton_identity.auth.refresh_store import RefreshTokenStore
from meeton_identity.auth.tokens import Clock, TokenInvalidError, TokenIssuer
from meeton_identity.config import Settings
from meeton_identity.database.connection import run_with_deadline
from meeton_identity.database.models import Identity, utc_now
from meeton_identity.errors import (
    ConflictError,
    InvalidCredentialError,
    NotFoundError,
    StorageError,
)

logger = logging.getLogger(__name__)


@dataclass
class IdentitySummary:
    """Public view of an identity returned with tokens."""

    id: uuid.UUID
    email: str
    handle: str
    display_name: str | None
    avatar_url: str | None
    onboarding_completed: bool

    @classmethod
    def from_identity(cls, identity: Identity) -> "IdentitySummary":
        return cls(
            id=identity.id,
            email=identity.email or "",
            handle=identity.handle,
            display_name=identity.display_name,
            avatar_url=identity.avatar_url,
            onboarding_completed=bool(identity.onboarding_completed),
        )


@dataclass
class TokenResponse:
    """Access/refresh token pair plus the identity it belongs to."""

    access_token: str
    refresh_token: str
    expires_in: int
    identity: IdentitySummary

    def to_wire(self) -> dict[str, Any]:
        """Render the camelCase payload clients expect."""
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresIn": self.expires_in,
            "identity": {
                "id": str(self.identity.id),
                "email": self.identity.email,
                "handle": self.identity.handle,
                "displayName": self.identity.display_name,
                "avatarUrl": self.identity.avatar_url,
                "onboardingCompleted": self.identity.onboarding_completed,
            },
        }


class SessionFacade:
    """Register, login, refresh and logout, in one place.

    Example:
        ```python
        facade = SessionFacade(get_session_factory(), get_settings())
        response = await facade.login_with_password("jane@example.com", "secret123")
        later = await facade.refresh(response.refresh_token)
        ```
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        clock: Clock = utc_now,
        verifier: GoogleTokenVerifier | None = None,
        issuer: TokenIssuer | None = None,
        refresh_store: RefreshTokenStore | None = None,
        reconciler: IdentityReconciler | None = None,
    ):
        self._session_factory = session_factory
        self._settings = settings
        self._clock = clock
        self._verifier = verifier
        self.issuer = issuer or TokenIssuer(settings, clock)
        self.refresh_store = refresh_store or RefreshTokenStore(
            session_factory, self.issuer, clock
        )
        self.reconciler = reconciler or IdentityReconciler(session_factory, clock)

    async def _bounded(self, operation):
        try:
            return await run_with_deadline(operation, self._settings.storage_timeout_seconds)
        except SQLAlchemyError as e:
            logger.error("Session storage failure", exc_info=True)
            raise StorageError("Session storage unavailable") from e

    async def _issue_tokens(
        self, identity: Identity, session: AsyncSession | None = None
    ) -> TokenResponse:
        access_token = self.issuer.issue_access(identity)
        refresh_token = self.issuer.issue_refresh()
        await self.refresh_store.persist(identity.id, refresh_token, session=session)

        return TokenResponse(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.issuer.access_lifetime_seconds(),
            identity=IdentitySummary.from_identity(identity),
        )

    async def _find_conflict(self, session: AsyncSession, email: str, handle: str) -> None:
        if await session.scalar(select(Identity.id).where(Identity.email == email)):
            raise ConflictError("An account with this email already exists", field="email")
        if not await is_handle_available(session, handle):
            raise ConflictError("This username is already taken", field="handle")

    # -------------------------------------------------------------------------
    # Password flow
    # -------------------------------------------------------------------------

    async def register_with_password(
        self,
        email: str,
        handle: str,
        display_name: str,
        password: str,
    ) -> TokenResponse:
        """Create a password identity and sign it in.

        The identity and its first refresh token are written in one
        transaction.

        Raises:
            ConflictError: Email or handle taken (`field` says which)
        """
        return await self._bounded(
            self._register(email.strip().lower(), handle, display_name, password)
        )

    async def _register(
        self, email: str, handle: str, display_name: str, password: str
    ) -> TokenResponse:
        async with self._session_factory() as session:
            await self._find_conflict(session, email, handle)

        password_hash = await hash_password(password, self._settings.password_hash_rounds)
        now = self._clock()

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    identity = Identity(
                        email=email,
                        handle=handle,
                        display_name=display_name,
                        password_hash=password_hash,
                        avatar_url=default_avatar_url(display_name or handle),
                        onboarding_completed=False,
                        last_active_at=now,
                    )
                    session.add(identity)
                    await session.flush()
                    response = await self._issue_tokens(identity, session=session)
        except (IntegrityError, StorageError) as e:
            # Lost a race with a concurrent registration
            async with self._session_factory() as session:
                await self._find_conflict(session, email, handle)
            raise StorageError("Could not create account") from e

        logger.info(f"Registered identity {identity.handle}")
        return response

    async def login_with_password(self, email: str, password: str) -> TokenResponse:
        """Sign in with email and password.

        Raises:
            InvalidCredentialError: Unknown email, no password set, or wrong password
        """
        return await self._bounded(self._login(email.strip().lower(), password))

    async def _login(self, email: str, password: str) -> TokenResponse:
        async with self._session_factory() as session:
            identity = await session.scalar(select(Identity).where(Identity.email == email))

        if identity is None or not identity.password_hash:
            logger.warning("Password login for unknown or password-less account")
            raise InvalidCredentialError("Invalid email or password")

        if not await verify_password(password, identity.password_hash):
            logger.warning(f"Wrong password for {identity.id}")
            raise InvalidCredentialError("Invalid email or password")

        async with self._session_factory() as session:
            async with session.begin():
                identity = await session.get(Identity, identity.id)
                if identity is None:
                    raise InvalidCredentialError("Invalid email or password")
                identity.last_active_at = self._clock()
                await session.flush()
                response = await self._issue_tokens(identity, session=session)

        logger.info(f"Identity {identity.handle} logged in")
        return response

    # -------------------------------------------------------------------------
    # Federated flow
    # -------------------------------------------------------------------------

    async def login_with_federated_profile(self, profile: FederatedProfile) -> TokenResponse:
        """Sign in with an already verified provider profile.

        No password check happens on this path; the profile must come from
        a verifier.
        """
        return await self._bounded(self._login_federated(profile))

    async def _login_federated(self, profile: FederatedProfile) -> TokenResponse:
        identity = await self.reconciler.reconcile(profile)
        response = await self._issue_tokens(identity)
        logger.info(f"Identity {identity.handle} logged in with Google")
        return response

    async def login_with_google_token(self, google_access_token: str) -> TokenResponse:
        """Verify a Google access token, then sign in with its profile.

        Raises:
            AuthenticationFailedError: Google rejected the token
        """
        if self._verifier is None:
            raise RuntimeError("No Google verifier configured")

        profile = await self._verifier.verify(google_access_token)
        return await self.login_with_federated_profile(profile)

    # -------------------------------------------------------------------------
    # Session lifecycle
    # -------------------------------------------------------------------------

    async def refresh(self, old_refresh_token: str) -> TokenResponse:
        """Trade a refresh token for a new access/refresh pair.

        Raises:
            InvalidCredentialError: Bad signature, unknown or already used token
            ExpiredCredentialError: Token row has expired
        """
        try:
            self.issuer.verify_refresh_signature(old_refresh_token)
        except TokenInvalidError as e:
            raise InvalidCredentialError("Invalid refresh token") from e

        return await self._bounded(self._refresh(old_refresh_token))

    async def _refresh(self, old_refresh_token: str) -> TokenResponse:
        identity, new_refresh_token = await self.refresh_store.redeem_and_rotate(
            old_refresh_token
        )

        async with self._session_factory() as session:
            async with session.begin():
                current = await session.get(Identity, identity.id)
                if current is not None:
                    current.last_active_at = self._clock()
                    identity = current

        return TokenResponse(
            access_token=self.issuer.issue_access(identity),
            refresh_token=new_refresh_token,
            expires_in=self.issuer.access_lifetime_seconds(),
            identity=IdentitySummary.from_identity(identity),
        )

    async def logout(self, refresh_token: str) -> None:
        """Revoke one refresh token. Access tokens already issued stay valid."""
        await self._bounded(self.refresh_store.revoke(refresh_token))

    async def logout_all(self, identity_id: uuid.UUID) -> None:
        """Revoke every refresh token of an identity."""
        await self._bounded(self.refresh_store.revoke_all(identity_id))

    # -------------------------------------------------------------------------
    # Lookups used by collaborators
    # -------------------------------------------------------------------------

    async def is_handle_available(
        self, handle: str, exclude_identity_id: uuid.UUID | None = None
    ) -> bool:
        """Whether a handle is free (or held only by `exclude_identity_id`)."""
        return await self._bounded(self._is_handle_available(handle, exclude_identity_id))

    async def _is_handle_available(
        self, handle: str, exclude_identity_id: uuid.UUID | None
    ) -> bool:
        async with self._session_factory() as session:
            return await is_handle_available(session, handle, exclude_identity_id)

    async def get_identity(self, identity_id: uuid.UUID) -> Identity | None:
        """Load an identity by id."""
        return await self._bounded(self._get_identity(identity_id))

    async def _get_identity(self, identity_id: uuid.UUID) -> Identity | None:
        async with self._session_factory() as session:
            return await session.get(Identity, identity_id)

    async def complete_onboarding(
        self,
        identity_id: uuid.UUID,
        bio: str | None = None,
        location: str | None = None,
        interests: list[str] | None = None,
    ) -> Identity:
        """Store the onboarding profile and mark onboarding done.

        Raises:
            NotFoundError: Identity does not exist
        """
        return await self._bounded(
            self._complete_onboarding(identity_id, bio, location, interests)
        )

    async def _complete_onboarding(
        self,
        identity_id: uuid.UUID,
        bio: str | None,
        location: str | None,
        interests: list[str] | None,
    ) -> Identity:
        async with self._session_factory() as session:
            async with session.begin():
                identity = await session.get(Identity, identity_id)
                if identity is None:
                    raise NotFoundError("User not found")
                if bio is not None:
                    identity.bio = bio
                if location is not None:
                    identity.location = location
                if interests is not None:
                    identity.interests = list(interests)
                identity.onboarding_completed = True

        return identity

