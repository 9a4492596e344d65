"""Database module for the identity engine.

This module provides:
- SQLAlchemy async database connection
- Identity and refresh-token models
- Deadline helper for storage calls
"""

from meeton_identity.database.connection import (
    close_db,
    create_session_factory,
    get_db,
    get_session_factory,
    init_db,
    run_with_deadline,
)
from meeton_identity.database.models import (
    Base,
    Identity,
    RefreshToken,
    utc_now,
)

__all__ = [
    # Connection
    "get_db",
    "init_db",
    "close_db",
    "create_session_factory",
    "get_session_factory",
    "run_with_deadline",
    # Models
    "Base",
    "Identity",
    "RefreshToken",
    "utc_now",
]
