"""
auth/sessions.py -- Session lifecycle on top of the storage collaborator.

SessionStore is the only component that creates, renews or deletes session
rows. Expiry is sliding: every authenticated request pushes expires_at to
now + duration. Two rules hold under concurrent requests bearing the same
token:

  - expires_at never moves backward (the storage UPDATE is conditional on
    the stored value being earlier than the new one)
  - a session some observer already found expired is deleted, never renewed

The clock is injectable so tests can create sessions "in the past".
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.models import Session
from auth.store import AuthStorage
from auth.tokens import issue_token
from core.config import DEFAULT_SESSION_DURATION_SECONDS

logger = logging.getLogger("motomanager.auth.sessions")

DEFAULT_SESSION_DURATION = timedelta(seconds=DEFAULT_SESSION_DURATION_SECONDS)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStore:
    """Create, find, renew and delete sessions.

    Usage:
        sessions = SessionStore(store)
        session = sessions.create(user.id)
        found = sessions.find_by_token(session.token)
        renewed = sessions.renew(found)     # None if it had expired
        sessions.delete_by_token(session.token)
    """

    def __init__(
        self,
        store: AuthStorage,
        duration: timedelta = DEFAULT_SESSION_DURATION,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if duration <= timedelta(0):
            raise ValueError("Session duration must be positive.")
        self._store = store
        self.duration = duration
        self._clock = clock

    @property
    def max_age_seconds(self) -> int:
        """Cookie Max-Age matching the sliding window."""
        return int(self.duration.total_seconds())

    def create(self, user_id: int) -> Session:
        """Start a session for user_id. The returned token is the cookie value."""
        session = Session(token=issue_token(), user_id=user_id, expires_at=self._clock() + self.duration)
        created = self._store.insert_session(session)
        logger.info("Session %s created for user %s", created.id, user_id)
        return created

    def find_by_token(self, token: str) -> Session | None:
        return self._store.get_session_by_token(token)

    def is_expired(self, session: Session) -> bool:
        return session.expires_at <= self._clock()

    def renew(self, session: Session) -> Session | None:
        """Slide expires_at to now + duration and return the stored session.

        Returns None when the session has expired (the row is deleted) or no
        longer exists. If a concurrent request already pushed the expiry
        further, the later stored value is returned unchanged.
        """
        now = self._clock()
        if session.expires_at <= now:
            self.delete_by_id(session.id)
            return None

        expires_at = now + self.duration
        if self._store.extend_session(session.id, expires_at, now):
            return Session(id=session.id, token=session.token, user_id=session.user_id, expires_at=expires_at)

        current = self._store.get_session_by_token(session.token)
        if current is None:
            return None
        if current.expires_at <= now:
            self.delete_by_id(current.id)
            return None
        return current

    def delete_by_token(self, token: str) -> None:
        """Delete the session for token. Deleting an unknown token is not an error."""
        self._store.delete_session_by_token(token)

    def delete_by_id(self, session_id: int | None) -> None:
        if session_id is None:
            return
        self._store.delete_session_by_id(session_id)

    def revoke_for_user(self, user_id: int) -> int:
        """Delete every session of user_id. Returns the number removed."""
        removed = self._store.delete_sessions_for_user(user_id)
        if removed:
            logger.info("Revoked %d session(s) of user %s", removed, user_id)
        return removed

    def purge_expired(self) -> int:
        """Delete all sessions that have expired. Returns the number removed."""
        removed = self._store.delete_sessions_expired_before(self._clock())
        if removed:
            logger.info("Purged %d expired session(s)", removed)
        return removed
