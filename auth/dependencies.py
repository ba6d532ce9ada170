"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The gateway lives on app.state.auth (built in the lifespan, see api/main.py).
These helpers translate between Starlette requests and the framework-free
gateway:

  request_context()   -- Request -> RequestContext
  authenticate()      -- runs require_user() for the request; returns AuthResult
  get_current_user()  -- JSON API dependency: PublicUser or HTTP 401
  require_admin()     -- JSON API dependency: admin PublicUser or HTTP 403

For authenticated API calls the renewed session cookie is written to the
injected Response, which FastAPI merges into the route's response. The web
layer calls authenticate() directly and turns Unauthenticated into a
redirect itself.

Layer rule: no imports from api/ or web/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request, Response

from auth import guard
from auth.errors import ForbiddenError
from auth.gateway import AuthGateway, AuthResult, Authenticated, RequestContext
from auth.models import PublicUser


def get_gateway(request: Request) -> AuthGateway:
    return request.app.state.auth


def request_context(request: Request) -> RequestContext:
    """Build the gateway's view of the request.

    Browsers never send the #fragment, so only path and query are carried.
    """
    return RequestContext(
        cookie_header=request.headers.get("cookie"),
        path=request.url.path,
        query=request.url.query,
    )


def authenticate(request: Request) -> AuthResult:
    """Resolve the session for this request. Never raises for auth failures."""
    return get_gateway(request).require_user(request_context(request))


def _authenticated(request: Request) -> Authenticated:
    result = authenticate(request)
    if not isinstance(result, Authenticated):
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers=dict(result.headers) or None,
        )
    return result


def get_current_user(request: Request, response: Response) -> PublicUser:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: PublicUser = Depends(get_current_user)): ...

    The 401 still carries the clear-cookie header when the client presented
    a dead session token.
    """
    auth = _authenticated(request)
    auth.headers.apply(response)
    return auth.user


def require_admin(request: Request, response: Response) -> PublicUser:
    """Require admin role. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin.

    Use as a FastAPI dependency:
        @router.post("/admin-only")
        async def route(user: PublicUser = Depends(require_admin)): ...

    FastAPI drops the injected Response when a dependency raises, so the
    403 carries the renewed session cookie itself.
    """
    auth = _authenticated(request)
    try:
        guard.require_admin(auth.user)
    except ForbiddenError as exc:
        raise HTTPException(status_code=403, detail=exc.as_dict(), headers=dict(auth.headers) or None) from exc
    auth.headers.apply(response)
    return auth.user
