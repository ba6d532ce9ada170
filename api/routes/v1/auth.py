"""
api/routes/v1/auth.py -- Authentication and user management REST endpoints.

Routes:
  POST   /api/v1/auth/login                -- identifier + password; sets session cookie
  POST   /api/v1/auth/logout               -- deletes the session, clears the cookie
  GET    /api/v1/auth/me                   -- current user (requires auth)
  POST   /api/v1/auth/password             -- change own password (requires auth)
  GET    /api/v1/auth/users                -- list users (admin only)
  POST   /api/v1/auth/users                -- create user (admin only)
  PATCH  /api/v1/auth/users/{id}           -- change role (admin only)
  PUT    /api/v1/auth/users/{id}/password  -- reset password (admin only)
  DELETE /api/v1/auth/users/{id}           -- delete user (admin only)

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT, default 10/minute).
  [C1] AuthGateway.login() goes through UserDirectory.verify_login(), which
       equalizes timing between unknown identifiers and wrong passwords.
  [M4] Self-deletion, self role change and removing the last admin are rejected.
  [M5] Cache-Control: no-store on login responses.

Handlers that hash or verify passwords are plain `def` so FastAPI runs them
in its threadpool; scrypt would otherwise block the event loop.

AuthError subclasses raised here (ValidationError, ConflictError) are turned
into 400 / 409 responses by the exception handler in api/main.py.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from core.limiter import limiter, login_rate_limit
from api.models import (
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PasswordChange,
    PasswordReset,
    UserCreate,
    UserPatch,
    UserResponse,
)
from auth.dependencies import get_current_user, get_gateway, request_context, require_admin
from auth.models import PublicUser

# Auth policy:
# - POST   /api/v1/auth/login:               public -- login endpoint must be unauthenticated
# - POST   /api/v1/auth/logout:              public -- clearing a session needs no prior auth
# - GET    /api/v1/auth/me:                  requires auth (get_current_user)
# - POST   /api/v1/auth/password:            requires auth (get_current_user)
# - GET    /api/v1/auth/users:               requires admin (require_admin)
# - POST   /api/v1/auth/users:               requires admin (require_admin)
# - PATCH  /api/v1/auth/users/{id}:          requires admin (require_admin)
# - PUT    /api/v1/auth/users/{id}/password: requires admin (require_admin)
# - DELETE /api/v1/auth/users/{id}:          requires admin (require_admin)
router = APIRouter()


def _not_found() -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={"code": "not_found", "message": "User not found."},
    )


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(login_rate_limit)  # [H2] below @router so the route registers the limited wrapper
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email or username and password; set the session cookie.

    Returns the same generic error for an unknown identifier and a wrong
    password ("bad_credentials") to avoid leaking account existence.
    """
    gateway = get_gateway(request)
    auth = gateway.login(body.identifier, body.password)
    if auth is None:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid email/username or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp

    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            user=UserResponse.from_user(auth.user),
            expires_at=auth.session.expires_at.isoformat(),
        ).model_dump(mode="json"),
    )
    auth.headers.set("Cache-Control", "no-store")  # [M5]
    auth.headers.apply(resp)
    return resp


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """Delete the session behind the cookie (if any) and clear the cookie."""
    headers = get_gateway(request).logout(request_context(request))
    resp = JSONResponse(content={"message": "Logged out."})
    headers.apply(resp)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserResponse)
def me(current_user: PublicUser = Depends(get_current_user)) -> UserResponse:
    """Return identity information for the currently authenticated user."""
    return UserResponse.from_user(current_user)


@router.post("/auth/password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: PasswordChange,
    current_user: PublicUser = Depends(get_current_user),
) -> MessageResponse:
    """Change the caller's own password. Other sessions of the account stay signed in."""
    get_gateway(request).change_password(current_user, body.current_password, body.new_password)
    return MessageResponse(message="Password changed.")


# ---------------------------------------------------------------------------
# User management (admin only)
# ---------------------------------------------------------------------------


@router.get("/auth/users", response_model=list[UserResponse])
def list_users(
    request: Request,
    current_user: PublicUser = Depends(require_admin),
) -> list[UserResponse]:
    """List all user accounts. Admin only."""
    return [UserResponse.from_user(u) for u in get_gateway(request).users.list_users()]


@router.post("/auth/users", response_model=UserResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    current_user: PublicUser = Depends(require_admin),
) -> UserResponse:
    """Create a new user account. Admin only."""
    created = get_gateway(request).users.create(
        email=body.email,
        username=body.username,
        name=body.name,
        password=body.password,
        role=body.role.value,
    )
    return UserResponse.from_user(created)


@router.patch("/auth/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    current_user: PublicUser = Depends(require_admin),
) -> UserResponse:
    """Change a user's role. Admin only.

    [M4] Rejects changing one's own role and demoting the last admin.
    """
    if body.role is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    updated = get_gateway(request).update_role(current_user, user_id, body.role.value)
    if updated is None:
        raise _not_found()
    return UserResponse.from_user(updated)


@router.put("/auth/users/{user_id}/password", status_code=204, response_class=Response)
def reset_password(
    request: Request,
    user_id: int,
    body: PasswordReset,
    current_user: PublicUser = Depends(require_admin),
) -> None:
    """Set a new password for another user. Admin only. Their sessions stay valid."""
    if not get_gateway(request).users.update_password(user_id, body.new_password):
        raise _not_found()


@router.delete("/auth/users/{user_id}", status_code=204, response_class=Response)
def delete_user(
    request: Request,
    user_id: int,
    current_user: PublicUser = Depends(require_admin),
) -> None:
    """Delete a user and revoke their sessions. Admin only.

    [M4] Rejects self-deletion and deleting the last admin.
    """
    if not get_gateway(request).delete_user(current_user, user_id):
        raise _not_found()
