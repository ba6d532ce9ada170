"""
auth/directory.py -- User records: creation, lookup, credential checks, admin changes.

UserDirectory is the only component that reads or writes password hashes.
Everything it returns is a PublicUser, with one exception: verify_login()
returns the full User to the gateway, which projects it straight away.

Security:
  Normalization: email and username are trimmed and lowercased before they
  are stored and before every lookup, so "A@B.COM" and "a@b.com" are the
  same account.

  [C1] verify_login() always runs the KDF, against DUMMY_HASH when the
  identifier is unknown, so "unknown identifier", "wrong password" and
  "corrupt stored hash" look identical to the caller in both result and
  timing.

  Last admin: demoting or deleting the last admin raises ConflictError. The
  storage statement carries the guard, so concurrent requests cannot race
  past it.

Owned records: the rest of the application owns data that references users
(vehicles, storage locations, documents). OwnedRecords is the hook through
which the directory tells it that a user is being deleted, or that the
first real account should adopt records left by the "system" placeholder.
"""

from __future__ import annotations

import logging
import re
from typing import Protocol

from sqlalchemy.exc import IntegrityError

from auth.errors import ConflictError, ValidationError
from auth.models import ROLE_ADMIN, ROLE_USER, USER_ROLES, PublicUser, User
from auth.passwords import DUMMY_HASH, hash_password, verify_password
from auth.store import AuthStorage

logger = logging.getLogger("motomanager.auth.directory")

EMAIL_RE = re.compile(r".+@.+\..+")
USERNAME_RE = re.compile(r"[a-zA-Z0-9._-]{3,32}")
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 255


class OwnedRecords(Protocol):
    """Business data owned by users, managed outside the auth subsystem."""

    def adopt_orphans(self, owner_id: int) -> None:
        """Hand records owned by the placeholder user to owner_id."""

    def release(self, user_id: int) -> None:
        """Detach or reassign records owned by user_id.

        Called inside the transaction that deletes the user, after the guarded
        DELETE succeeded. Raising aborts the deletion. It is never called when
        the deletion is refused.
        """


class NoOwnedRecords:
    """OwnedRecords for deployments without user-owned business data."""

    def adopt_orphans(self, owner_id: int) -> None:
        return None

    def release(self, user_id: int) -> None:
        return None


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_username(username: str) -> str:
    return username.strip().lower()


def to_public_user(user: User) -> PublicUser:
    """Project a User to the representation that may leave the directory."""
    return PublicUser(
        id=user.id,
        email=user.email,
        username=user.username,
        name=user.name,
        role=user.role if user.role in USER_ROLES else ROLE_USER,
        created_at=user.created_at,
        updated_at=user.updated_at,
    )


def _check_password(password: str, field: str = "password") -> None:
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long.", field=field)
    if len(password) > MAX_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at most {MAX_PASSWORD_LENGTH} characters long.", field=field)


def _check_role(role: str) -> None:
    if role not in USER_ROLES:
        raise ValidationError(f"Unknown role {role!r}.", field="role")


class UserDirectory:
    """Repository-facing service for User records.

    Usage:
        users = UserDirectory(store)
        alice = users.create(email="alice@example.com", username="alice", name="Alice", password="s3cret-pw")
        user = users.verify_login("alice", "s3cret-pw")
        users.update_role(alice.id, "admin")
    """

    def __init__(self, store: AuthStorage, owned_records: OwnedRecords | None = None) -> None:
        self._store = store
        self._owned = owned_records or NoOwnedRecords()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def find_by_email(self, email: str) -> User | None:
        return self._store.get_user_by_email(normalize_email(email))

    def find_by_username(self, username: str) -> User | None:
        return self._store.get_user_by_username(normalize_username(username))

    def get(self, user_id: int) -> PublicUser | None:
        user = self._store.get_user_by_id(user_id)
        return to_public_user(user) if user is not None else None

    def count(self) -> int:
        return self._store.count_users()

    def count_admins(self) -> int:
        return self._store.count_admins()

    def list_users(self) -> list[PublicUser]:
        """Every user ordered by name, never including password hashes."""
        return [to_public_user(u) for u in self._store.list_users()]

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create(
        self,
        *,
        email: str,
        username: str,
        name: str,
        password: str,
        role: str = ROLE_USER,
    ) -> PublicUser:
        """Validate, hash and persist a new user.

        Raises ValidationError naming the offending field, or ConflictError
        (duplicate_email / duplicate_username). Nothing is stored on failure.
        """
        email = normalize_email(email or "")
        if not EMAIL_RE.fullmatch(email):
            raise ValidationError("Please enter a valid email address.", field="email")

        username = (username or "").strip()
        if not USERNAME_RE.fullmatch(username):
            raise ValidationError(
                "Username must be 3-32 characters and may only contain letters, digits, '.', '_' and '-'.",
                field="username",
            )
        username = normalize_username(username)

        name = (name or "").strip()
        if not name:
            raise ValidationError("Name must not be empty.", field="name")

        _check_password(password)
        _check_role(role)

        if self._store.get_user_by_email(email) is not None:
            raise ConflictError("A user with this email address already exists.", code="duplicate_email", field="email")
        if self._store.get_user_by_username(username) is not None:
            raise ConflictError("This username is already taken.", code="duplicate_username", field="username")

        try:
            user = self._store.insert_user(
                User(email=email, username=username, name=name, password_hash=hash_password(password), role=role)
            )
        except IntegrityError as exc:
            # Lost a race with a concurrent registration for the same email/username.
            raise ConflictError("A user with this email address or username already exists.") from exc

        logger.info("User %s created with role %s", user.id, user.role)
        return to_public_user(user)

    def adopt_orphaned_records(self, owner_id: int) -> None:
        self._owned.adopt_orphans(owner_id)

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def verify_login(self, identifier: str, password: str) -> User | None:
        """Return the User for identifier (email, then username) if password matches."""
        normalized = (identifier or "").strip().lower()
        user = self._store.get_user_by_email(normalized) if normalized else None
        if user is None and normalized:
            user = self._store.get_user_by_username(normalized)

        if user is None:
            # Equalize timing -- do NOT return early before running the KDF [C1]
            verify_password(password or "", DUMMY_HASH)
            return None
        if not verify_password(password or "", user.password_hash):
            return None
        return user

    def update_password(self, user_id: int, new_password: str) -> bool:
        """Replace the password hash. Returns False if the user does not exist.

        Existing sessions stay valid. Whether a password change should sign
        out other devices is an open product decision; until then this keeps
        the established multi-device behaviour.
        """
        _check_password(new_password)
        updated = self._store.update_password_hash(user_id, hash_password(new_password))
        if updated:
            logger.info("Password of user %s changed", user_id)
        return updated

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def update_role(self, user_id: int, role: str) -> PublicUser | None:
        """Change a user's role. Returns None if the user does not exist.

        Raises ConflictError(last_admin) when this would leave no admin.
        """
        _check_role(role)
        if self._store.get_user_by_id(user_id) is None:
            return None

        if not self._store.update_role(user_id, role, keep_an_admin=role != ROLE_ADMIN):
            if self._store.get_user_by_id(user_id) is None:
                return None
            raise ConflictError("The last administrator cannot be demoted.", code="last_admin", field="role")

        logger.info("Role of user %s set to %s", user_id, role)
        return self.get(user_id)

    def delete(self, user_id: int) -> bool:
        """Delete a user. Returns False if the user does not exist.

        Raises ConflictError(last_admin) for the last admin. Self-deletion is
        a request-level rule enforced by AuthGateway.delete_user().
        """
        target = self._store.get_user_by_id(user_id)
        if target is None:
            return False
        if target.role == ROLE_ADMIN and self._store.count_admins() <= 1:
            raise ConflictError("The last administrator cannot be deleted.", code="last_admin")

        if not self._store.delete_user(user_id, keep_an_admin=True, on_delete=self._owned.release):
            if self._store.get_user_by_id(user_id) is None:
                return False
            raise ConflictError("The last administrator cannot be deleted.", code="last_admin")

        logger.info("User %s deleted", user_id)
        return True
