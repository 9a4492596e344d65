"""Database models for the identity engine.

## Security Notes

- Refresh tokens are capabilities: possession is proof. The row is the
  authority on whether a token is still good; the token's own embedded
  expiry is advisory.
- Recovery tokens live on the identity row and are cleared on use.
- Password hashes are bcrypt; federated-only identities have none.

## Schema Overview

```
identities
└── refresh_tokens (1:N) - one per device/session
```
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    TypeDecorator,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always round-trips as UTC.

    Backends without native timezone support (SQLite) hand back naive
    values; those are stored in UTC and re-tagged on load.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    """Base class for all database models."""

    type_annotation_map = {
        dict[str, Any]: JSON,
        datetime: UTCDateTime,
    }


class Identity(Base):
    """A person who can sign in.

    Created by password registration or by a first Google login. Email and
    handle are globally unique; the handle never changes once set.
    """

    __tablename__ = "identities"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str | None] = mapped_column(String(255), unique=True)
    handle: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(255))
    avatar_url: Mapped[str | None] = mapped_column(String(512))

    # Authentication methods
    google_id: Mapped[str | None] = mapped_column(String(255), unique=True)
    password_hash: Mapped[str | None] = mapped_column(String(255))

    # Onboarding profile
    onboarding_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    bio: Mapped[str | None] = mapped_column(Text)
    location: Mapped[str | None] = mapped_column(String(255))
    interests: Mapped[list[str] | None] = mapped_column(JSON)

    # Recovery
    email_verified_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    reset_password_token: Mapped[str | None] = mapped_column(String(128), index=True)
    reset_password_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    email_verification_token: Mapped[str | None] = mapped_column(String(128), index=True)
    email_verification_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime())

    # Timestamps
    last_active_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utc_now, onupdate=utc_now
    )

    # Relationships
    refresh_tokens: Mapped[list["RefreshToken"]] = relationship(
        back_populates="identity",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="raise",
    )

    def __repr__(self) -> str:
        return f"<Identity {self.handle}>"


class RefreshToken(Base):
    """One renewable session.

    Rows are replaced on rotation, deleted on logout, and garbage-collected
    lazily when the owner next logs in.
    """

    __tablename__ = "refresh_tokens"

    token: Mapped[str] = mapped_column(String(512), primary_key=True)
    identity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("identities.id", ondelete="CASCADE"), nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    # Relationships
    identity: Mapped["Identity"] = relationship(
        back_populates="refresh_tokens", lazy="raise"
    )

    __table_args__ = (
        Index("ix_refresh_tokens_identity", "identity_id"),
        Index("ix_refresh_tokens_expires_at", "expires_at"),
    )

    def __repr__(self) -> str:
        return f"<RefreshToken identity_id={self.identity_id}>"
