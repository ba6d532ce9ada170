"""
tests/test_directory.py -- Unit tests for UserDirectory.

Covers:
  - validation of every field, in order, naming the offending field
  - email / username normalization and duplicate detection
  - verify_login by email or username, wrong password, unknown identifier
  - list_users never exposing password hashes
  - role changes and deletion guarded by the last-admin rule
  - OwnedRecords hooks
"""

from __future__ import annotations

import pytest

from auth.directory import UserDirectory
from auth.errors import ConflictError, ValidationError
from auth.passwords import verify_password
from conftest import DEFAULT_PASSWORD, make_user


class TestCreate:
    def test_create_returns_public_user(self, directory) -> None:
        """The created user has an id, normalized fields and no hash attribute."""
        user = directory.create(
            email="  Rider@Example.COM ",
            username=" Rider_01 ",
            name="  Rider One ",
            password=DEFAULT_PASSWORD,
        )
        assert user.id is not None
        assert user.email == "rider@example.com"
        assert user.username == "rider_01"
        assert user.name == "Rider One"
        assert user.role == "user"
        assert not hasattr(user, "password_hash")

    @pytest.mark.parametrize(
        ("overrides", "field"),
        [
            ({"email": "not-an-email"}, "email"),
            ({"email": "a@b"}, "email"),
            ({"username": "ab"}, "username"),
            ({"username": "has space"}, "username"),
            ({"username": "x" * 33}, "username"),
            ({"name": "   "}, "name"),
            ({"password": "short"}, "password"),
            ({"password": "x" * 256}, "password"),
            ({"role": "superuser"}, "role"),
        ],
    )
    def test_invalid_field_rejected(self, directory, store, overrides, field) -> None:
        """Each invalid field raises ValidationError naming it, and nothing is stored."""
        values = {
            "email": "ok@example.com",
            "username": "okuser",
            "name": "Ok",
            "password": DEFAULT_PASSWORD,
            "role": "user",
        }
        values.update(overrides)
        with pytest.raises(ValidationError) as excinfo:
            directory.create(**values)
        assert excinfo.value.field == field
        assert store.count_users() == 0

    def test_email_checked_before_username(self, directory) -> None:
        """With several bad fields, the email is reported first."""
        with pytest.raises(ValidationError) as excinfo:
            directory.create(email="bad", username="x", name="", password="")
        assert excinfo.value.field == "email"

    @pytest.mark.parametrize("variant", ["ALICE@example.com", " alice@example.com", "Alice@Example.Com  "])
    def test_duplicate_email_variants_rejected(self, directory, variant) -> None:
        """Case and whitespace variants of an existing email are the same account."""
        make_user(directory, "alice")
        with pytest.raises(ConflictError) as excinfo:
            make_user(directory, "alice2", email=variant)
        assert excinfo.value.code == "duplicate_email"
        assert excinfo.value.field == "email"
        assert directory.count() == 1

    def test_duplicate_username_case_insensitive(self, directory) -> None:
        """Usernames collide regardless of case."""
        make_user(directory, "alice")
        with pytest.raises(ConflictError) as excinfo:
            make_user(directory, "ALICE", email="other@example.com")
        assert excinfo.value.code == "duplicate_username"

    def test_password_is_hashed(self, directory) -> None:
        """The stored hash verifies the password and is not the password."""
        make_user(directory, "alice")
        stored = directory.find_by_username("alice")
        assert stored.password_hash != DEFAULT_PASSWORD
        assert verify_password(DEFAULT_PASSWORD, stored.password_hash)


class TestLookup:
    def test_find_by_email_normalizes(self, directory) -> None:
        make_user(directory, "alice")
        assert directory.find_by_email("  ALICE@EXAMPLE.COM").username == "alice"

    def test_get_unknown_is_none(self, directory) -> None:
        assert directory.get(12345) is None

    def test_list_users_has_no_hashes(self, directory) -> None:
        """No listed user carries a password hash."""
        make_user(directory, "bob", name="Bob")
        make_user(directory, "alice", name="Alice")
        users = directory.list_users()
        assert [u.name for u in users] == ["Alice", "Bob"]
        for user in users:
            assert not hasattr(user, "password_hash")
            assert "password_hash" not in vars(user)


class TestVerifyLogin:
    def test_login_by_username(self, directory) -> None:
        user = make_user(directory, "alice")
        assert directory.verify_login("alice", DEFAULT_PASSWORD).id == user.id

    def test_login_by_email_any_case(self, directory) -> None:
        user = make_user(directory, "alice")
        assert directory.verify_login(" Alice@Example.com ", DEFAULT_PASSWORD).id == user.id

    def test_wrong_password(self, directory) -> None:
        make_user(directory, "alice")
        assert directory.verify_login("alice", DEFAULT_PASSWORD[:-1]) is None

    def test_unknown_identifier(self, directory) -> None:
        assert directory.verify_login("ghost", DEFAULT_PASSWORD) is None

    def test_empty_identifier(self, directory) -> None:
        assert directory.verify_login("", DEFAULT_PASSWORD) is None

    def test_corrupt_stored_hash(self, directory, store) -> None:
        """A damaged hash behaves like a wrong password."""
        user = make_user(directory, "alice")
        store.update_password_hash(user.id, "not-a-hash")
        assert directory.verify_login("alice", DEFAULT_PASSWORD) is None


class TestUpdatePassword:
    def test_new_password_works_old_does_not(self, directory) -> None:
        user = make_user(directory, "alice")
        assert directory.update_password(user.id, "brand-new-secret") is True
        assert directory.verify_login("alice", "brand-new-secret") is not None
        assert directory.verify_login("alice", DEFAULT_PASSWORD) is None

    def test_unknown_user(self, directory) -> None:
        assert directory.update_password(999, "brand-new-secret") is False

    def test_short_password_rejected(self, directory) -> None:
        user = make_user(directory, "alice")
        with pytest.raises(ValidationError):
            directory.update_password(user.id, "short")


class TestUpdateRole:
    def test_last_admin_cannot_be_demoted(self, directory) -> None:
        """With a single admin, demotion is a conflict and nothing changes."""
        admin = make_user(directory, "root", role="admin")
        with pytest.raises(ConflictError) as excinfo:
            directory.update_role(admin.id, "user")
        assert excinfo.value.code == "last_admin"
        assert directory.get(admin.id).role == "admin"

    def test_demotion_with_two_admins(self, directory) -> None:
        """A second admin makes demotion possible."""
        first = make_user(directory, "root", role="admin")
        make_user(directory, "deputy", role="admin")
        updated = directory.update_role(first.id, "user")
        assert updated.role == "user"
        assert directory.count_admins() == 1

    def test_promote_user(self, directory) -> None:
        make_user(directory, "root", role="admin")
        user = make_user(directory, "alice")
        assert directory.update_role(user.id, "admin").role == "admin"

    def test_unknown_user(self, directory) -> None:
        assert directory.update_role(999, "admin") is None

    def test_invalid_role(self, directory) -> None:
        user = make_user(directory, "alice")
        with pytest.raises(ValidationError) as excinfo:
            directory.update_role(user.id, "owner")
        assert excinfo.value.field == "role"


class TestDelete:
    def test_delete_user(self, directory) -> None:
        make_user(directory, "root", role="admin")
        user = make_user(directory, "alice")
        assert directory.delete(user.id) is True
        assert directory.get(user.id) is None

    def test_last_admin_cannot_be_deleted(self, directory) -> None:
        admin = make_user(directory, "root", role="admin")
        with pytest.raises(ConflictError) as excinfo:
            directory.delete(admin.id)
        assert excinfo.value.code == "last_admin"
        assert directory.get(admin.id) is not None

    def test_unknown_user(self, directory) -> None:
        assert directory.delete(999) is False


class RecordingOwnedRecords:
    def __init__(self) -> None:
        self.adopted: list[int] = []
        self.released: list[int] = []

    def adopt_orphans(self, owner_id: int) -> None:
        self.adopted.append(owner_id)

    def release(self, user_id: int) -> None:
        self.released.append(user_id)


class TestOwnedRecords:
    def test_delete_releases_records(self, store) -> None:
        """The owner of business data is told when the user is deleted."""
        owned = RecordingOwnedRecords()
        directory = UserDirectory(store, owned)
        make_user(directory, "root", role="admin")
        user = make_user(directory, "alice")
        directory.delete(user.id)
        assert owned.released == [user.id]

    def test_refused_delete_releases_nothing(self, store) -> None:
        owned = RecordingOwnedRecords()
        directory = UserDirectory(store, owned)
        admin = make_user(directory, "root", role="admin")
        with pytest.raises(ConflictError):
            directory.delete(admin.id)
        assert owned.released == []

    def test_guard_refusal_releases_nothing(self, store) -> None:
        """When the guarded DELETE matches no row, the release hook never runs."""
        owned = RecordingOwnedRecords()
        directory = UserDirectory(store, owned)
        admin = make_user(directory, "root", role="admin")
        assert store.delete_user(admin.id, keep_an_admin=True, on_delete=owned.release) is False
        assert owned.released == []
        assert directory.get(admin.id) is not None

    def test_failed_release_keeps_the_user(self, store) -> None:
        """An error while releasing records rolls the deletion back."""

        class BrokenOwnedRecords(RecordingOwnedRecords):
            def release(self, user_id: int) -> None:
                raise RuntimeError("records locked")

        directory = UserDirectory(store, BrokenOwnedRecords())
        make_user(directory, "root", role="admin")
        user = make_user(directory, "alice")
        with pytest.raises(RuntimeError):
            directory.delete(user.id)
        assert directory.get(user.id) is not None

    def test_adopt_orphans(self, store) -> None:
        owned = RecordingOwnedRecords()
        directory = UserDirectory(store, owned)
        directory.adopt_orphaned_records(7)
        assert owned.adopted == [7]
