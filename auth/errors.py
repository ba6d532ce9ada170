"""
auth/errors.py -- Structured rejections raised by the auth subsystem.

Every error carries a stable machine-readable code and, for validation
failures, the name of the offending field. The API layer maps the classes
onto HTTP status codes (400 / 409 / 403) and the web layer renders
error.message next to the form.

Not-found is deliberately absent from this module. Unknown users and
sessions are reported as None / False and the caller decides whether that
becomes a 404.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for all auth rejections. Nothing is written when one is raised."""

    code = "auth_error"

    def __init__(self, message: str, *, code: str | None = None, field: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.field = field

    def as_dict(self) -> dict:
        detail = {"code": self.code, "message": self.message}
        if self.field is not None:
            detail["field"] = self.field
        return detail


class ValidationError(AuthError):
    """Malformed input (email, username, name, password or role)."""

    code = "validation_error"


class ConflictError(AuthError):
    """The request is well-formed but would violate an invariant.

    Codes: duplicate_email, duplicate_username, last_admin, self_deletion,
    self_role_change.
    """

    code = "conflict"


class ForbiddenError(AuthError):
    """The authenticated user lacks the required role."""

    code = "forbidden"
