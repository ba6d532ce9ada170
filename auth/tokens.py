"""
auth/tokens.py -- Session token generation and cookie (de)serialization.

Security design decisions:
  Tokens: secrets.token_hex(40) gives 320 bits of entropy from the OS CSPRNG.
       The token is an opaque bearer secret; it is never derived from the
       user id or the clock.

  Cookie: httpOnly (JS cannot read it -- XSS mitigation), SameSite=Lax (not
       sent on cross-site POST -- CSRF mitigation for most cases), Path=/,
       and Secure when the deployment runs in production. Max-Age matches
       the sliding session window so browser and server forget the session
       together.

  Parsing: extract_token() uses Starlette's cookie parser, the same one the
       request object uses, which tolerates malformed headers. Absence of a
       well-formed token is "no session", never an error.

The builders return raw Set-Cookie header values rather than mutating a
response object, so the gateway can accumulate them in ResponseHeaders.
"""

from __future__ import annotations

import secrets

from starlette.requests import cookie_parser

SESSION_COOKIE_NAME = "mb_session"

_TOKEN_BYTES = 40


def issue_token() -> str:
    """Return a new 80-hex-char session token."""
    return secrets.token_hex(_TOKEN_BYTES)


def _serialize(value: str, max_age: int, secure: bool) -> str:
    parts = [f"{SESSION_COOKIE_NAME}={value}", "Path=/", "HttpOnly", "SameSite=Lax", f"Max-Age={max_age}"]
    if secure:
        parts.append("Secure")
    return "; ".join(parts)


def build_cookie(token: str, max_age: int, *, secure: bool) -> str:
    """Return the Set-Cookie value that stores token for max_age seconds."""
    return _serialize(token, max_age, secure)


def build_clear_cookie(*, secure: bool) -> str:
    """Return a Set-Cookie value that makes the client drop the session cookie now."""
    return _serialize("", 0, secure)


def extract_token(cookie_header: str | None) -> str | None:
    """Return the session token from a raw Cookie header, or None if there is none."""
    if not cookie_header:
        return None
    token = cookie_parser(cookie_header).get(SESSION_COOKIE_NAME)
    return token or None
