"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. AuthStore is the repository;
_row_to_user / _row_to_session are the mappers. The directory, session
store and gateway never touch SQL directly, and they receive the store
through their constructors (AuthStorage describes what they rely on), so
tests can hand them an isolated in-memory database.

Security:
  All queries use bound parameters. No f-strings in SQL.

  The last-admin invariant is enforced inside the UPDATE / DELETE statement
  itself (guarded by an admin-count subquery). A read-then-write check in
  Python would let two concurrent demotions both observe "two admins" and
  both succeed.

  Session expiry only ever moves forward: extend_session() is a conditional
  UPDATE that refuses to shorten a session or to revive one that is already
  expired.

Timestamps are stored as fixed-width ISO 8601 UTC strings with microseconds,
so lexical comparison in SQL matches chronological order.

DB path: auth/motomanager_auth.db unless DATABASE_URL says otherwise.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Protocol

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import ROLE_ADMIN, Session, User

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'motomanager_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("username", String(32), nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("password_hash", Text, nullable=False),
    Column("role", String(30), nullable=False, server_default="user"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token", String(128), nullable=False, unique=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Index("ix_sessions_user_id", "user_id"),
)

# Second handle on the users table for the admin-count subquery. Without the
# alias SQLAlchemy would correlate the subquery to the UPDATE target.
_admins = _users.alias("admins")


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def to_iso(moment: datetime) -> str:
    """Serialize a datetime as a fixed-width UTC ISO 8601 string."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    """Parse a stored timestamp. Naive values are treated as UTC.

    Raises ValueError for malformed input.
    """
    moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def _now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


def _admin_count():
    return select(func.count()).select_from(_admins).where(_admins.c.role == ROLE_ADMIN).scalar_subquery()


# ---------------------------------------------------------------------------
# Storage contract
# ---------------------------------------------------------------------------


class AuthStorage(Protocol):
    """What SessionStore, UserDirectory and AuthGateway need from persistence."""

    def count_users(self) -> int: ...

    def count_admins(self) -> int: ...

    def insert_user(self, user: User) -> User: ...

    def get_user_by_id(self, user_id: int) -> User | None: ...

    def get_user_by_email(self, email: str) -> User | None: ...

    def get_user_by_username(self, username: str) -> User | None: ...

    def list_users(self) -> list[User]: ...

    def update_role(self, user_id: int, role: str, *, keep_an_admin: bool) -> bool: ...

    def update_password_hash(self, user_id: int, password_hash: str) -> bool: ...

    def delete_user(
        self, user_id: int, *, keep_an_admin: bool, on_delete: Callable[[int], None] | None = None
    ) -> bool: ...

    def insert_session(self, session: Session) -> Session: ...

    def get_session_by_token(self, token: str) -> Session | None: ...

    def extend_session(self, session_id: int, expires_at: datetime, now: datetime) -> bool: ...

    def delete_session_by_token(self, token: str) -> int: ...

    def delete_session_by_id(self, session_id: int) -> int: ...

    def delete_sessions_for_user(self, user_id: int) -> int: ...

    def delete_sessions_expired_before(self, now: datetime) -> int: ...


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """SQLAlchemy-backed repository for User and Session records.

    Usage:
        store = AuthStore()                                # SQLite default
        store = AuthStore("postgresql://user:pw@host/db")  # PostgreSQL
        user = store.insert_user(User(email=..., username=..., name=..., password_hash=...))
        store.get_user_by_username("alice")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def count_users(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return result or 0

    def count_admins(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_users).where(_users.c.role == ROLE_ADMIN)
            ).scalar()
        return result or 0

    def insert_user(self, user: User) -> User:
        """Insert a new user and return it with id and timestamps filled in.

        Raises sqlalchemy.exc.IntegrityError if the email or username already
        exists. UserDirectory turns that into a ConflictError.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email,
                    username=user.username,
                    name=user.name,
                    password_hash=user.password_hash,
                    role=user.role,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            user_id = result.inserted_primary_key[0]
        return User(
            id=user_id,
            email=user.email,
            username=user.username,
            name=user.name,
            password_hash=user.password_hash,
            role=user.role,
            created_at=now,
            updated_at=now,
        )

    def get_user_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_email(self, email: str) -> User | None:
        """Exact match. Callers normalize the email first."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_username(self, username: str) -> User | None:
        """Exact match. Callers normalize the username first."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users ordered by display name."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.name, _users.c.id)).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_role(self, user_id: int, role: str, *, keep_an_admin: bool) -> bool:
        """Set a user's role. Returns True if a row was updated.

        keep_an_admin=True adds the guard "another admin still exists", so the
        statement updates nothing when it would demote the last admin.
        """
        stmt = _users.update().where(_users.c.id == user_id).values(role=role, updated_at=_now_iso())
        if keep_an_admin:
            stmt = stmt.where(or_(_users.c.role != ROLE_ADMIN, _admin_count() > 1))
        with self.engine.connect() as conn:
            result = conn.execute(stmt)
            conn.commit()
        return result.rowcount > 0

    def update_password_hash(self, user_id: int, password_hash: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(password_hash=password_hash, updated_at=_now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    def delete_user(
        self, user_id: int, *, keep_an_admin: bool, on_delete: Callable[[int], None] | None = None
    ) -> bool:
        """Permanently delete a user record. Returns True if deleted.

        keep_an_admin=True refuses (deletes nothing) when the target is the
        last admin. on_delete(user_id) runs in the same transaction once the
        row is gone; it is skipped when nothing was deleted, and an exception
        from it rolls the deletion back. Sessions are not touched here;
        SessionStore owns them.
        """
        stmt = _users.delete().where(_users.c.id == user_id)
        if keep_an_admin:
            stmt = stmt.where(or_(_users.c.role != ROLE_ADMIN, _admin_count() > 1))
        with self.engine.begin() as conn:
            deleted = conn.execute(stmt).rowcount > 0
            if deleted and on_delete is not None:
                on_delete(user_id)
        return deleted

    # ------------------------------------------------------------------
    # Session queries
    # ------------------------------------------------------------------

    def insert_session(self, session: Session) -> Session:
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.insert().values(
                    token=session.token,
                    user_id=session.user_id,
                    expires_at=to_iso(session.expires_at),
                )
            )
            conn.commit()
            session_id = result.inserted_primary_key[0]
        return Session(id=session_id, token=session.token, user_id=session.user_id, expires_at=session.expires_at)

    def get_session_by_token(self, token: str) -> Session | None:
        """Single lookup through the UNIQUE index on token."""
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.token == token)).fetchone()
        return _row_to_session(row) if row is not None else None

    def extend_session(self, session_id: int, expires_at: datetime, now: datetime) -> bool:
        """Move expires_at forward. Returns True if the row was updated.

        Updates nothing when the session is gone, already expired at `now`,
        or already expires at or after `expires_at`.
        """
        new_value = to_iso(expires_at)
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where(
                    (_sessions.c.id == session_id)
                    & (_sessions.c.expires_at > to_iso(now))
                    & (_sessions.c.expires_at < new_value)
                )
                .values(expires_at=new_value)
            )
            conn.commit()
        return result.rowcount > 0

    def delete_session_by_token(self, token: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.token == token))
            conn.commit()
        return result.rowcount

    def delete_session_by_id(self, session_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.id == session_id))
            conn.commit()
        return result.rowcount

    def delete_sessions_for_user(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.user_id == user_id))
            conn.commit()
        return result.rowcount

    def delete_sessions_expired_before(self, now: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at <= to_iso(now)))
            conn.commit()
        return result.rowcount

    def count_sessions(self, user_id: int | None = None) -> int:
        """Count stored sessions, optionally only those of user_id."""
        stmt = select(func.count()).select_from(_sessions)
        if user_id is not None:
            stmt = stmt.where(_sessions.c.user_id == user_id)
        with self.engine.connect() as conn:
            result = conn.execute(stmt).scalar()
        return result or 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------

# Unparseable expiry values map here so they always read as expired.
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        username=row.username,
        name=row.name,
        password_hash=row.password_hash,
        role=row.role,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_session(row) -> Session:
    try:
        expires_at = from_iso(row.expires_at)
    except (TypeError, ValueError):
        expires_at = _EPOCH
    return Session(id=row.id, token=row.token, user_id=row.user_id, expires_at=expires_at)
