"""Unique handle generation.

Handles are lowercase alphanumeric. A new federated identity gets its handle
from the display name when that yields at least three characters, otherwise
from the local part of the email address:

    "Jane Doe!!" / jane@x.com  ->  janedoe, janedoe1, janedoe2, ...
    None         / jo.b@x.com  ->  job, job1, ...

The stem is cut to `HANDLE_BASE_MAX_LENGTH` characters so that any suffixed
candidate fits the column. Numbered candidates are tried up to
`HANDLE_MAX_ATTEMPTS` times. Past that a random suffix is appended so
generation always terminates; the unique constraint on `identities.handle`
catches whatever race remains.
"""

from __future__ import annotations

import re
import secrets
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from meeton_identity.database.models import Identity

HANDLE_MIN_LENGTH = 3
HANDLE_BASE_MAX_LENGTH = 25
HANDLE_MAX_ATTEMPTS = 20
FALLBACK_HANDLE = "user"

_NON_ALPHANUMERIC = re.compile(r"[^a-z0-9]")


def normalize_handle(text: str | None) -> str:
    """Lowercase and strip everything but a-z and 0-9."""
    return _NON_ALPHANUMERIC.sub("", (text or "").lower())


def handle_base(email: str, display_name: str | None = None) -> str:
    """Pick the stem that numbered candidates are built from."""
    from_name = normalize_handle(display_name)
    if len(from_name) >= HANDLE_MIN_LENGTH:
        return from_name[:HANDLE_BASE_MAX_LENGTH]

    local_part = (email or "").split("@", 1)[0]
    return normalize_handle(local_part)[:HANDLE_BASE_MAX_LENGTH] or FALLBACK_HANDLE


async def is_handle_available(
    session: AsyncSession,
    handle: str,
    exclude_identity_id: uuid.UUID | None = None,
) -> bool:
    """Check whether a handle is free.

    Args:
        session: Database session
        handle: Candidate handle
        exclude_identity_id: Identity allowed to already hold the handle

    Returns:
        True if nobody holds it, or only `exclude_identity_id` does
    """
    holder = await session.scalar(select(Identity.id).where(Identity.handle == handle))
    if holder is None:
        return True
    return exclude_identity_id is not None and holder == exclude_identity_id


async def generate_handle(
    session: AsyncSession,
    email: str,
    display_name: str | None = None,
) -> str:
    """Generate an available handle for a new identity.

    Args:
        session: Database session
        email: The identity's email address
        display_name: Optional display name

    Returns:
        A handle that was free when checked (or a randomized one)
    """
    base = handle_base(email, display_name)

    for attempt in range(HANDLE_MAX_ATTEMPTS):
        candidate = base if attempt == 0 else f"{base}{attempt}"
        if await is_handle_available(session, candidate):
            return candidate

    return f"{base}{secrets.token_hex(3)}"
