"""
web/routes.py -- Jinja2 template routes for the MotoManager account pages.

These routes serve server-rendered HTML. They share app.state.auth with the
API routes but answer with pages and redirects instead of JSON.

Protected pages call _require_auth() first. An Unauthenticated result
becomes a 302 to /auth/login?redirectTo=<requested page>, carrying the
clear-cookie header when a dead session was presented. An Authenticated
result carries the refreshed session cookie, which every response of the
handler must include.

Routes:
  GET  /                 -- home page with account details (auth required)
  POST /account/password -- change own password (auth required)
  GET  /auth/login       -- login form
  POST /auth/login       -- handle login (rate limited)
  GET  /auth/register    -- registration form
  POST /auth/register    -- create account and sign in
  POST /auth/logout      -- delete session, clear cookie, redirect /auth/login
  GET  /settings/admin   -- user administration (admin required)
  POST /settings/admin   -- createUser / updateUserRole / deleteUser / resetPassword
"""

import logging
from pathlib import Path
from typing import Optional, Union

from fastapi import APIRouter, Form, Request
from fastapi.responses import HTMLResponse, PlainTextResponse, RedirectResponse, Response
from fastapi.templating import Jinja2Templates

from auth.dependencies import authenticate, get_gateway, request_context
from auth.directory import EMAIL_RE, MIN_PASSWORD_LENGTH, USERNAME_RE
from auth.errors import AuthError, ConflictError
from auth.gateway import Authenticated, Unauthenticated
from auth.guard import is_admin
from auth.headers import ResponseHeaders
from auth.models import USER_ROLES
from core.config import get_settings
from core.limiter import limiter, login_rate_limit

logger = logging.getLogger("motomanager.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
router = APIRouter()

# ---------------------------------------------------------------------------
# Auth helpers
# ---------------------------------------------------------------------------

# Whitelist mapping for ?notice= query params [M3].
# The raw query param is NEVER passed to templates -- only the message from
# this dict is. Prevents reflected XSS via crafted query strings.
_NOTICES: dict[str, str] = {
    "password_changed": "Your password has been changed.",
    "user_created": "User created.",
    "role_updated": "Role updated.",
    "user_deleted": "User deleted.",
    "password_reset": "Password reset.",
    "logged_out": "You have been signed out.",
}

_BAD_CREDENTIALS = "Invalid email/username or password."


def _safe_next(next_url: Optional[str]) -> str:
    """Validate a post-login redirect target. Only accept relative paths. [C2]

    Prevents open redirect attacks where an attacker crafts a URL like:
      /auth/login?redirectTo=https://attacker.com  or  ?redirectTo=//attacker.com

    Both would redirect off-site after login. We only allow paths that:
    - Start with "/" (relative, server-local)
    - Do NOT start with "//" (protocol-relative URL, redirects off-site)
    """
    if next_url and next_url.startswith("/") and not next_url.startswith("//"):
        return next_url
    return "/"


def _require_auth(request: Request) -> Union[Authenticated, RedirectResponse]:
    """Resolve the session, or build the redirect to the login page.

    Call at the top of protected route handlers:
        auth = _require_auth(request)
        if isinstance(auth, RedirectResponse):
            return auth
    """
    result = authenticate(request)
    if isinstance(result, Unauthenticated):
        resp = RedirectResponse(result.redirect_to, status_code=302)
        result.headers.apply(resp)
        return resp
    return result


def _redirect(url: str, headers: Optional[ResponseHeaders] = None) -> RedirectResponse:
    resp = RedirectResponse(url, status_code=302)
    if headers is not None:
        headers.apply(resp)
    return resp


def _render(
    request: Request,
    name: str,
    context: dict,
    headers: Optional[ResponseHeaders] = None,
    status_code: int = 200,
) -> HTMLResponse:
    resp = templates.TemplateResponse(request, name, context, status_code=status_code)
    if headers is not None:
        headers.apply(resp)
    return resp


def _error_status(exc: AuthError) -> int:
    return 409 if isinstance(exc, ConflictError) else 400


def _registration_open(request: Request) -> bool:
    """Registration is open while no user exists, or when enabled in settings."""
    return get_gateway(request).users.count() == 0 or get_settings().enable_registration


def _redirect_target(request: Request, form_value: str = "") -> str:
    return _safe_next(form_value or request.query_params.get("redirectTo"))


# ---------------------------------------------------------------------------
# Home
# ---------------------------------------------------------------------------


@router.get("/", response_class=HTMLResponse)
def home(request: Request) -> Response:
    """Signed-in landing page with the user's account details."""
    auth = _require_auth(request)
    if isinstance(auth, RedirectResponse):
        return auth
    notice = _NOTICES.get(request.query_params.get("notice", ""))
    return _render(
        request,
        "index.html",
        {"user": auth.user, "is_admin": is_admin(auth.user), "notice": notice},
        auth.headers,
    )


@router.post("/account/password", response_class=HTMLResponse)
def change_password(
    request: Request,
    current_password: str = Form(""),
    new_password: str = Form(""),
    confirm_password: str = Form(""),
) -> Response:
    """Change the signed-in user's password. Other sessions stay signed in."""
    auth = _require_auth(request)
    if isinstance(auth, RedirectResponse):
        return auth

    def _fail(message: str, status_code: int = 400) -> HTMLResponse:
        return _render(
            request,
            "index.html",
            {"user": auth.user, "is_admin": is_admin(auth.user), "error_msg": message},
            auth.headers,
            status_code=status_code,
        )

    if new_password != confirm_password:
        return _fail("New passwords do not match.")
    try:
        get_gateway(request).change_password(auth.user, current_password, new_password)
    except AuthError as exc:
        return _fail(exc.message, _error_status(exc))
    return _redirect("/?notice=password_changed", auth.headers)


# ---------------------------------------------------------------------------
# Login / logout
# ---------------------------------------------------------------------------


@router.get("/auth/login", response_class=HTMLResponse)
def login_form(request: Request) -> Response:
    """Render the login form. Already signed-in users go straight to their target."""
    result = authenticate(request)
    if isinstance(result, Authenticated):
        return _redirect(_redirect_target(request), result.headers)

    return _render(
        request,
        "login.html",
        {
            "redirect_to": _redirect_target(request),
            "show_register": _registration_open(request),
            "notice": _NOTICES.get(request.query_params.get("notice", "")),
        },
        result.headers,
    )


@router.post("/auth/login", response_class=HTMLResponse)
@limiter.limit(login_rate_limit)  # [H2] below @router so the route registers the limited wrapper
def login_post(
    request: Request,
    identifier: str = Form(""),
    password: str = Form(""),
    redirectTo: str = Form(""),
) -> Response:
    """Handle the login form. Identifier is an email address or a username."""
    target = _redirect_target(request, redirectTo)

    def _fail(message: str) -> HTMLResponse:
        return _render(
            request,
            "login.html",
            {
                "redirect_to": target,
                "show_register": _registration_open(request),
                "error_msg": message,
                "identifier": identifier,
            },
            status_code=400,
        )

    identifier = identifier.strip()
    if not (EMAIL_RE.fullmatch(identifier) or USERNAME_RE.fullmatch(identifier)):
        return _fail("Please enter a valid email address or username.")
    if not password:
        return _fail("Password is required.")

    auth = get_gateway(request).login(identifier, password)  # [C1] timing equalization
    if auth is None:
        return _fail(_BAD_CREDENTIALS)

    resp = _redirect(target, auth.headers)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/logout")
def logout(request: Request) -> RedirectResponse:
    """Delete the session, clear the cookie and return to the login page."""
    headers = get_gateway(request).logout(request_context(request))
    return _redirect("/auth/login?notice=logged_out", headers)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


@router.get("/auth/register", response_class=HTMLResponse)
def register_form(request: Request) -> Response:
    result = authenticate(request)
    if isinstance(result, Authenticated):
        return _redirect("/", result.headers)
    if not _registration_open(request):
        return _redirect("/auth/login", result.headers)
    return _render(
        request, "register.html", {"first_user": get_gateway(request).users.count() == 0}, result.headers
    )


@router.post("/auth/register", response_class=HTMLResponse)
def register_post(
    request: Request,
    name: str = Form(""),
    email: str = Form(""),
    username: str = Form(""),
    password: str = Form(""),
    confirm_password: str = Form(""),
) -> Response:
    """Create an account and sign it in.

    The first account becomes the administrator. Re-checks at submit time
    whether registration is open, since the first user may have been created
    after the form was rendered.
    """
    if not _registration_open(request):
        return _redirect("/auth/login")

    def _fail(message: str, status_code: int = 400) -> HTMLResponse:
        return _render(
            request,
            "register.html",
            {
                "error_msg": message,
                "name": name,
                "email": email,
                "username": username,
                "first_user": get_gateway(request).users.count() == 0,
            },
            status_code=status_code,
        )

    if len(name.strip()) < 2:
        return _fail("Name must be at least 2 characters long.")
    if not EMAIL_RE.fullmatch(email.strip()):
        return _fail("Please enter a valid email address.")
    if not USERNAME_RE.fullmatch(username.strip()):
        return _fail("Username must be 3-32 characters: letters, digits, '.', '_' or '-'.")
    if len(password) < MIN_PASSWORD_LENGTH:
        return _fail(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long.")
    if password != confirm_password:
        return _fail("Passwords do not match.")

    try:
        auth = get_gateway(request).register(email=email, username=username, name=name, password=password)
    except AuthError as exc:
        return _fail(exc.message, _error_status(exc))

    logger.info("User %s registered via web form", auth.user.id)
    resp = _redirect("/", auth.headers)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Admin settings
# ---------------------------------------------------------------------------


def _admin_page(
    request: Request,
    auth: Authenticated,
    error_msg: Optional[str] = None,
    status_code: int = 200,
) -> HTMLResponse:
    return _render(
        request,
        "admin.html",
        {
            "user": auth.user,
            "users": get_gateway(request).users.list_users(),
            "roles": USER_ROLES,
            "notice": _NOTICES.get(request.query_params.get("notice", "")),
            "error_msg": error_msg,
        },
        auth.headers,
        status_code=status_code,
    )


def _require_admin_page(request: Request) -> Union[Authenticated, Response]:
    auth = _require_auth(request)
    if isinstance(auth, RedirectResponse):
        return auth
    if not is_admin(auth.user):
        resp = PlainTextResponse("Admin access required.", status_code=403)
        auth.headers.apply(resp)
        return resp
    return auth


@router.get("/settings/admin", response_class=HTMLResponse)
def admin_settings(request: Request) -> Response:
    """List users with forms for creating, changing and deleting them. Admin only."""
    auth = _require_admin_page(request)
    if not isinstance(auth, Authenticated):
        return auth
    return _admin_page(request, auth)


@router.post("/settings/admin", response_class=HTMLResponse)
def admin_settings_post(
    request: Request,
    intent: str = Form(""),
    user_id: str = Form(""),
    email: str = Form(""),
    username: str = Form(""),
    name: str = Form(""),
    password: str = Form(""),
    role: str = Form(""),
) -> Response:
    """Dispatch one admin action by its intent. Admin only."""
    auth = _require_admin_page(request)
    if not isinstance(auth, Authenticated):
        return auth
    gateway = get_gateway(request)

    target_id: Optional[int] = None
    if intent in ("updateUserRole", "deleteUser", "resetPassword"):
        try:
            target_id = int(user_id)
        except ValueError:
            return _admin_page(request, auth, "Invalid user.", status_code=400)

    try:
        if intent == "createUser":
            gateway.users.create(email=email, username=username, name=name, password=password, role=role or "user")
            notice = "user_created"
        elif intent == "updateUserRole":
            if gateway.update_role(auth.user, target_id, role) is None:
                return _admin_page(request, auth, "User not found.", status_code=404)
            notice = "role_updated"
        elif intent == "deleteUser":
            if not gateway.delete_user(auth.user, target_id):
                return _admin_page(request, auth, "User not found.", status_code=404)
            notice = "user_deleted"
        elif intent == "resetPassword":
            if not gateway.users.update_password(target_id, password):
                return _admin_page(request, auth, "User not found.", status_code=404)
            notice = "password_reset"
        else:
            return _admin_page(request, auth, "Unknown action.", status_code=400)
    except AuthError as exc:
        return _admin_page(request, auth, exc.message, status_code=_error_status(exc))

    logger.info("Admin %s performed %s", auth.user.id, intent)
    return _redirect(f"/settings/admin?notice={notice}", auth.headers)
