"""Password hashing with bcrypt.

Hashing is CPU-bound, so both helpers run bcrypt in a worker thread to keep
the event loop free for other requests. Passwords longer than 72 UTF-8
bytes are truncated before hashing, matching what bcrypt itself compares.
"""

from __future__ import annotations

import asyncio
import logging

import bcrypt

logger = logging.getLogger(__name__)

# bcrypt reads at most this many bytes of input
BCRYPT_MAX_PASSWORD_BYTES = 72


def _encode(password: str) -> bytes:
    return password.encode("utf-8")[:BCRYPT_MAX_PASSWORD_BYTES]


def _hash(password: str, rounds: int) -> str:
    hashed = bcrypt.hashpw(_encode(password), bcrypt.gensalt(rounds=rounds))
    return hashed.decode("utf-8")


def _check(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(_encode(password), password_hash.encode("utf-8"))
    except ValueError:
        logger.warning("Stored password hash is not a valid bcrypt hash")
        return False


async def hash_password(password: str, rounds: int = 12) -> str:
    """Hash a password with the given bcrypt work factor."""
    return await asyncio.to_thread(_hash, password, rounds)


async def verify_password(password: str, password_hash: str) -> bool:
    """Check a password against a stored bcrypt hash (constant time)."""
    return await asyncio.to_thread(_check, password, password_hash)
