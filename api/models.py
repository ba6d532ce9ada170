"""
API request and response models for MotoManager auth endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Field constraints here are transport limits only (lengths, enums). Business
validation -- email/username format, password length, uniqueness -- happens
in UserDirectory so the web forms and the API enforce identical rules.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import PublicUser

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    admin = "admin"
    user = "user"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login. identifier is an email or a username."""

    model_config = ConfigDict(str_strip_whitespace=True)

    identifier: str = Field(min_length=1, max_length=255)
    # Not stripped: leading/trailing spaces are part of a password.
    password: str = Field(min_length=1, max_length=255, json_schema_extra={"format": "password"})


class PasswordChange(BaseModel):
    """Request body for POST /api/v1/auth/password."""

    current_password: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=1, max_length=255)


class PasswordReset(BaseModel):
    """Request body for PUT /api/v1/auth/users/{id}/password (admin)."""

    new_password: str = Field(min_length=1, max_length=255)


class UserCreate(BaseModel):
    """Request body for POST /api/v1/auth/users (admin)."""

    email: str = Field(min_length=1, max_length=255)
    username: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)
    role: RoleEnum = RoleEnum.user


class UserPatch(BaseModel):
    """Request body for PATCH /api/v1/auth/users/{id} (admin)."""

    role: Optional[RoleEnum] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a user. There is no password_hash field to leak."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    username: str
    name: str
    role: RoleEnum
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_user(cls, user: PublicUser) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            username=user.username,
            name=user.name,
            role=user.role,
            created_at=user.created_at or "",
            updated_at=user.updated_at or "",
        )


class LoginResponse(BaseModel):
    """Response for POST /api/v1/auth/login. The session itself travels in the cookie."""

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    expires_at: str


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    field: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
