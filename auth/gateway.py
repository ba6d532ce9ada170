"""
auth/gateway.py -- Per-request authentication and session orchestration.

AuthGateway ties the codec, SessionStore and UserDirectory together. Every
protected operation calls require_user() first; its result is data, not an
exception:

  Authenticated(user, session, headers)
      The session was valid and has been renewed. headers carries the
      refreshed cookie and must be applied to whatever response is sent.

  Unauthenticated(redirect_to, reason, headers)
      reason is one of:
        no_token         -- no session cookie on the request
        unknown_session  -- cookie present, no matching session
        expired          -- session found but expired (row deleted)
        orphaned         -- session valid but its user is gone (row deleted)
      For every reason except no_token, headers clears the dead cookie.
      redirect_to is the login URL with the requested location preserved
      in ?redirectTo=.

The web layer turns Unauthenticated into a 302, the JSON API into a 401.

Request-level rules that need to know who is asking (no self-deletion, no
changing one's own role) also live here rather than in UserDirectory.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from urllib.parse import quote

from auth.directory import OwnedRecords, UserDirectory, to_public_user
from auth.errors import ConflictError, ValidationError
from auth.headers import ResponseHeaders
from auth.models import ROLE_ADMIN, ROLE_USER, PublicUser, Session
from auth.sessions import DEFAULT_SESSION_DURATION, SessionStore
from auth.store import AuthStorage
from auth.tokens import build_clear_cookie, build_cookie, extract_token

logger = logging.getLogger("motomanager.auth.gateway")

LOGIN_PATH = "/auth/login"

REASON_NO_TOKEN = "no_token"
REASON_UNKNOWN_SESSION = "unknown_session"
REASON_EXPIRED = "expired"
REASON_ORPHANED = "orphaned"


@dataclass(frozen=True)
class RequestContext:
    """The parts of an inbound request the gateway looks at."""

    cookie_header: str | None = None
    path: str = "/"
    query: str = ""
    fragment: str = ""

    @property
    def requested_location(self) -> str:
        location = self.path or "/"
        if self.query:
            location += f"?{self.query}"
        if self.fragment:
            location += f"#{self.fragment}"
        return location


@dataclass(frozen=True)
class Authenticated:
    user: PublicUser
    session: Session
    headers: ResponseHeaders = field(default_factory=ResponseHeaders)


@dataclass(frozen=True)
class Unauthenticated:
    redirect_to: str
    reason: str
    headers: ResponseHeaders = field(default_factory=ResponseHeaders)


AuthResult = Authenticated | Unauthenticated


def login_redirect_target(location: str, login_path: str = LOGIN_PATH) -> str:
    """Return login_path?redirectTo=<location, percent-encoded>."""
    return f"{login_path}?redirectTo={quote(location, safe='')}"


class AuthGateway:
    """Front door of the auth subsystem.

    Usage:
        gateway = AuthGateway.from_store(store, secure_cookies=False)
        result = gateway.require_user(RequestContext(cookie_header=..., path="/garage"))
        if isinstance(result, Unauthenticated):
            ...  # redirect to result.redirect_to with result.headers
    """

    def __init__(
        self,
        sessions: SessionStore,
        users: UserDirectory,
        *,
        secure_cookies: bool = False,
        login_path: str = LOGIN_PATH,
    ) -> None:
        self.sessions = sessions
        self.users = users
        self.secure_cookies = secure_cookies
        self.login_path = login_path

    @classmethod
    def from_store(
        cls,
        store: AuthStorage,
        *,
        session_duration: timedelta | None = None,
        secure_cookies: bool = False,
        owned_records: OwnedRecords | None = None,
    ) -> AuthGateway:
        sessions = SessionStore(store, session_duration or DEFAULT_SESSION_DURATION)
        return cls(sessions, UserDirectory(store, owned_records), secure_cookies=secure_cookies)

    # ------------------------------------------------------------------
    # Cookie helpers
    # ------------------------------------------------------------------

    def _session_headers(self, session: Session) -> ResponseHeaders:
        return ResponseHeaders().set_cookie(
            build_cookie(session.token, self.sessions.max_age_seconds, secure=self.secure_cookies)
        )

    def _clear_headers(self) -> ResponseHeaders:
        return ResponseHeaders().set_cookie(build_clear_cookie(secure=self.secure_cookies))

    def _unauthenticated(self, ctx: RequestContext, reason: str, clear: bool = True) -> Unauthenticated:
        return Unauthenticated(
            redirect_to=login_redirect_target(ctx.requested_location, self.login_path),
            reason=reason,
            headers=self._clear_headers() if clear else ResponseHeaders(),
        )

    def _start_session(self, user: PublicUser) -> Authenticated:
        session = self.sessions.create(user.id)
        return Authenticated(user=user, session=session, headers=self._session_headers(session))

    # ------------------------------------------------------------------
    # Request authentication
    # ------------------------------------------------------------------

    def require_user(self, ctx: RequestContext) -> AuthResult:
        """Resolve and renew the request's session. See the module docstring for outcomes."""
        token = extract_token(ctx.cookie_header)
        if token is None:
            return self._unauthenticated(ctx, REASON_NO_TOKEN, clear=False)

        session = self.sessions.find_by_token(token)
        if session is None:
            return self._unauthenticated(ctx, REASON_UNKNOWN_SESSION)

        if self.sessions.is_expired(session):
            self.sessions.delete_by_id(session.id)
            logger.info("Session %s expired; deleted", session.id)
            return self._unauthenticated(ctx, REASON_EXPIRED)

        user = self.users.get(session.user_id)
        if user is None:
            self.sessions.delete_by_id(session.id)
            logger.warning("Session %s references missing user %s; deleted", session.id, session.user_id)
            return self._unauthenticated(ctx, REASON_ORPHANED)

        renewed = self.sessions.renew(session)
        if renewed is None:
            return self._unauthenticated(ctx, REASON_EXPIRED)

        return Authenticated(user=user, session=renewed, headers=self._session_headers(renewed))

    def login(self, identifier: str, password: str) -> Authenticated | None:
        """Check credentials and start a session. Returns None on any failure."""
        user = self.users.verify_login(identifier, password)
        if user is None:
            logger.info("Failed login attempt")
            return None
        logger.info("User %s signed in", user.id)
        return self._start_session(to_public_user(user))

    def logout(self, ctx: RequestContext) -> ResponseHeaders:
        """Delete the presented session (if any) and return clear-cookie headers."""
        token = extract_token(ctx.cookie_header)
        if token is not None:
            self.sessions.delete_by_token(token)
        return self._clear_headers()

    # ------------------------------------------------------------------
    # Account lifecycle
    # ------------------------------------------------------------------

    def register(self, *, email: str, username: str, name: str, password: str) -> Authenticated:
        """Create an account and sign it in.

        The first account becomes the administrator and adopts records left
        behind by the placeholder owner. Later accounts are regular users.
        """
        first_user = self.users.count() == 0
        user = self.users.create(
            email=email,
            username=username,
            name=name,
            password=password,
            role=ROLE_ADMIN if first_user else ROLE_USER,
        )
        if first_user:
            self.users.adopt_orphaned_records(user.id)
        return self._start_session(user)

    def change_password(self, user: PublicUser, current_password: str, new_password: str) -> None:
        """Change the signed-in user's own password after re-checking the current one."""
        if self.users.verify_login(user.username, current_password) is None:
            raise ValidationError("Current password is incorrect.", field="current_password")
        self.users.update_password(user.id, new_password)

    def update_role(self, requester: PublicUser, user_id: int, role: str) -> PublicUser | None:
        if user_id == requester.id:
            raise ConflictError("You cannot change your own role.", code="self_role_change", field="role")
        return self.users.update_role(user_id, role)

    def delete_user(self, requester: PublicUser, user_id: int) -> bool:
        """Delete another user and revoke their sessions. Returns False if not found."""
        if user_id == requester.id:
            raise ConflictError("You cannot delete your own account.", code="self_deletion")
        if not self.users.delete(user_id):
            return False
        self.sessions.revoke_for_user(user_id)
        return True
