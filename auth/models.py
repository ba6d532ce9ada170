"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own the
domain shape; the store, directory and gateway do the work.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

ROLE_ADMIN = "admin"
ROLE_USER = "user"
USER_ROLES: tuple[str, ...] = (ROLE_ADMIN, ROLE_USER)


@dataclass
class User:
    """A stored identity, including the password hash.

    Only auth/store.py and auth/directory.py handle this type. Everything
    beyond the directory boundary receives a PublicUser instead.

    email and username are always stored normalized (trimmed, lowercase).
    """

    email: str
    username: str
    name: str
    password_hash: str
    role: str = ROLE_USER  # "admin" or "user"
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass(frozen=True)
class PublicUser:
    """A User with the password hash removed.

    Frozen so a route handler cannot mutate the object it was handed and
    expect the change to persist.
    """

    id: int
    email: str
    username: str
    name: str
    role: str
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Session:
    """Proof that the holder of token signed in as user_id.

    expires_at is a timezone-aware UTC datetime. It slides forward on every
    authenticated request.
    """

    token: str
    user_id: int
    expires_at: datetime
    id: int | None = None
