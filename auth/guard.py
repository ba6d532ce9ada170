"""
auth/guard.py -- Role check for admin-only operations.

Pure and synchronous: no I/O, no mutation. Always applied to a user that
AuthGateway.require_user() has already authenticated.
"""

from __future__ import annotations

from auth.errors import ForbiddenError
from auth.models import ROLE_ADMIN, PublicUser


def is_admin(user: PublicUser | None) -> bool:
    return user is not None and user.role == ROLE_ADMIN


def require_admin(user: PublicUser) -> PublicUser:
    """Return user unchanged if it is an admin, otherwise raise ForbiddenError."""
    if not is_admin(user):
        raise ForbiddenError("Admin access required.")
    return user
