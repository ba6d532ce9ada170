"""
tests/test_web_routes.py -- Integration tests for the server-rendered account pages.

Covers the login form, first-run registration, the password form on the
home page, sign-out and the admin settings page with each of its intents.
"""

from __future__ import annotations

from fastapi.testclient import TestClient

from auth.tokens import SESSION_COOKIE_NAME
from conftest import DEFAULT_PASSWORD, login, make_user, set_cookies


def _register(client: TestClient, **overrides):
    data = {
        "name": "First Rider",
        "email": "first@example.com",
        "username": "first",
        "password": DEFAULT_PASSWORD,
        "confirm_password": DEFAULT_PASSWORD,
    }
    data.update(overrides)
    return client.post("/auth/register", data=data)


class TestLoginForm:
    def test_form_renders(self, client: TestClient) -> None:
        resp = client.get("/auth/login")
        assert resp.status_code == 200
        assert 'name="identifier"' in resp.text

    def test_register_link_when_no_users(self, client: TestClient) -> None:
        assert 'href="/auth/register"' in client.get("/auth/login").text

    def test_invalid_identifier_format(self, client: TestClient) -> None:
        resp = client.post("/auth/login", data={"identifier": "a b", "password": "x"})
        assert resp.status_code == 400
        assert "valid email address or username" in resp.text

    def test_missing_password(self, client: TestClient) -> None:
        resp = client.post("/auth/login", data={"identifier": "alice", "password": ""})
        assert resp.status_code == 400
        assert "Password is required." in resp.text

    def test_wrong_password_generic_error(self, client: TestClient, app_users) -> None:
        """A bad password re-renders the form with the generic message and no cookie."""
        make_user(app_users, "alice")
        resp = client.post("/auth/login", data={"identifier": "alice", "password": DEFAULT_PASSWORD[:-1]})
        assert resp.status_code == 400
        assert "Invalid email/username or password." in resp.text
        assert set_cookies(resp) == []

    def test_successful_login_sets_cookie(self, client: TestClient, app_users) -> None:
        make_user(app_users, "alice")
        resp = client.post("/auth/login", data={"identifier": "alice@example.com", "password": DEFAULT_PASSWORD})
        assert resp.status_code == 302
        assert resp.headers["location"] == "/"
        assert resp.headers["cache-control"] == "no-store"

    def test_rate_limited(self, client: TestClient) -> None:
        """The form shares the login limit: the eleventh attempt within a minute gets 429."""
        statuses = [
            client.post("/auth/login", data={"identifier": "ghost", "password": "nope"}).status_code
            for _ in range(11)
        ]
        assert statuses[:10] == [400] * 10
        assert statuses[10] == 429
        assert any(c.startswith(f"{SESSION_COOKIE_NAME}=") for c in set_cookies(resp))


class TestRegister:
    def test_first_user_becomes_admin(self, client: TestClient, app_users) -> None:
        """The very first registration creates an admin and signs them in."""
        resp = _register(client)
        assert resp.status_code == 302
        assert resp.headers["location"] == "/"
        assert app_users.find_by_username("first").role == "admin"
        assert client.get("/").status_code == 200

    def test_second_user_is_regular(self, client: TestClient, app_users) -> None:
        make_user(app_users, "root", role="admin")
        resp = _register(client, email="second@example.com", username="second")
        assert resp.status_code == 302
        assert app_users.find_by_username("second").role == "user"

    def test_password_mismatch(self, client: TestClient, app_users) -> None:
        resp = _register(client, confirm_password="something-else")
        assert resp.status_code == 400
        assert "Passwords do not match." in resp.text
        assert app_users.count() == 0

    def test_short_name(self, client: TestClient) -> None:
        resp = _register(client, name="A")
        assert resp.status_code == 400
        assert "at least 2 characters" in resp.text

    def test_short_password(self, client: TestClient) -> None:
        resp = _register(client, password="short", confirm_password="short")
        assert resp.status_code == 400

    def test_duplicate_email(self, client: TestClient, app_users) -> None:
        make_user(app_users, "root", role="admin", email="first@example.com")
        resp = _register(client, email="FIRST@example.com", username="another")
        assert resp.status_code == 409
        assert "already exists" in resp.text

    def test_signed_in_user_redirected_away(self, client: TestClient, app_users) -> None:
        make_user(app_users, "alice")
        login(client, "alice")
        resp = client.get("/auth/register")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/"

    def test_dead_cookie_cleared_on_form(self, client: TestClient) -> None:
        """A stale session cookie is dropped when the registration form renders."""
        client.cookies.set(SESSION_COOKIE_NAME, "dead")
        resp = client.get("/auth/register")
        assert resp.status_code == 200
        cleared = [c for c in set_cookies(resp) if c.startswith(f"{SESSION_COOKIE_NAME}=")]
        assert len(cleared) == 1
        assert "Max-Age=0" in cleared[0]


class TestAccountPassword:
    def test_change_password(self, client: TestClient, app_users) -> None:
        make_user(app_users, "alice")
        login(client, "alice")
        resp = client.post(
            "/account/password",
            data={
                "current_password": DEFAULT_PASSWORD,
                "new_password": "brand-new-secret",
                "confirm_password": "brand-new-secret",
            },
        )
        assert resp.status_code == 302
        assert resp.headers["location"] == "/?notice=password_changed"
        assert app_users.verify_login("alice", "brand-new-secret") is not None

    def test_wrong_current_password(self, client: TestClient, app_users) -> None:
        make_user(app_users, "alice")
        login(client, "alice")
        resp = client.post(
            "/account/password",
            data={
                "current_password": "not-the-password",
                "new_password": "brand-new-secret",
                "confirm_password": "brand-new-secret",
            },
        )
        assert resp.status_code == 400
        assert "Current password is incorrect." in resp.text

    def test_requires_login(self, client: TestClient) -> None:
        resp = client.post("/account/password", data={})
        assert resp.status_code == 302
        assert resp.headers["location"].startswith("/auth/login")


class TestLogout:
    def test_logout_clears_session(self, client: TestClient, app_users, store) -> None:
        make_user(app_users, "alice")
        login(client, "alice")
        resp = client.post("/auth/logout")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/auth/login?notice=logged_out"
        assert any("Max-Age=0" in c for c in set_cookies(resp))
        assert store.count_sessions() == 0
        assert client.get("/").status_code == 302


class TestAdminSettings:
    def _as_admin(self, client: TestClient, app_users):
        admin = make_user(app_users, "root", role="admin", name="Root")
        login(client, "root")
        return admin

    def test_regular_user_gets_403(self, client: TestClient, app_users) -> None:
        make_user(app_users, "root", role="admin")
        make_user(app_users, "alice")
        login(client, "alice")
        resp = client.get("/settings/admin")
        assert resp.status_code == 403
        assert resp.text == "Admin access required."

    def test_lists_users(self, client: TestClient, app_users) -> None:
        self._as_admin(client, app_users)
        make_user(app_users, "alice", name="Alice")
        resp = client.get("/settings/admin")
        assert resp.status_code == 200
        assert "alice@example.com" in resp.text
        assert "root@example.com" in resp.text

    def test_create_user(self, client: TestClient, app_users) -> None:
        self._as_admin(client, app_users)
        resp = client.post(
            "/settings/admin",
            data={
                "intent": "createUser",
                "email": "bob@example.com",
                "username": "bob",
                "name": "Bob",
                "password": DEFAULT_PASSWORD,
                "role": "user",
            },
        )
        assert resp.status_code == 302
        assert resp.headers["location"] == "/settings/admin?notice=user_created"
        assert app_users.find_by_username("bob") is not None

    def test_update_role(self, client: TestClient, app_users) -> None:
        self._as_admin(client, app_users)
        alice = make_user(app_users, "alice")
        resp = client.post("/settings/admin", data={"intent": "updateUserRole", "user_id": str(alice.id), "role": "admin"})
        assert resp.status_code == 302
        assert app_users.get(alice.id).role == "admin"

    def test_own_role_change_rejected(self, client: TestClient, app_users) -> None:
        admin = self._as_admin(client, app_users)
        resp = client.post("/settings/admin", data={"intent": "updateUserRole", "user_id": str(admin.id), "role": "user"})
        assert resp.status_code == 409
        assert "cannot change your own role" in resp.text
        assert app_users.get(admin.id).role == "admin"

    def test_reset_password(self, client: TestClient, app_users) -> None:
        self._as_admin(client, app_users)
        alice = make_user(app_users, "alice")
        resp = client.post(
            "/settings/admin",
            data={"intent": "resetPassword", "user_id": str(alice.id), "password": "reset-by-admin"},
        )
        assert resp.status_code == 302
        assert app_users.verify_login("alice", "reset-by-admin") is not None

    def test_delete_user(self, client: TestClient, app_users) -> None:
        self._as_admin(client, app_users)
        alice = make_user(app_users, "alice")
        resp = client.post("/settings/admin", data={"intent": "deleteUser", "user_id": str(alice.id)})
        assert resp.status_code == 302
        assert app_users.get(alice.id) is None

    def test_self_deletion_rejected(self, client: TestClient, app_users) -> None:
        admin = self._as_admin(client, app_users)
        resp = client.post("/settings/admin", data={"intent": "deleteUser", "user_id": str(admin.id)})
        assert resp.status_code == 409
        assert app_users.get(admin.id) is not None

    def test_unknown_intent(self, client: TestClient, app_users) -> None:
        self._as_admin(client, app_users)
        resp = client.post("/settings/admin", data={"intent": "dropTables"})
        assert resp.status_code == 400
        assert "Unknown action." in resp.text

    def test_bad_user_id(self, client: TestClient, app_users) -> None:
        self._as_admin(client, app_users)
        resp = client.post("/settings/admin", data={"intent": "deleteUser", "user_id": "abc"})
        assert resp.status_code == 400
