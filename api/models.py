"""
API request and response models for PenTrack REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

import dataclasses
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import AuditEntry, User
from auth.passwords import MAX_PASSWORD_BYTES, password_byte_length

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    admin = "admin"
    pentester = "pentester"
    client = "client"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


def _check_password_bytes(value: Optional[str]) -> Optional[str]:
    if value is not None and password_byte_length(value) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes when UTF-8 encoded")
    return value


class LocalLoginRequest(BaseModel):
    """Request body for POST /api/local-login.

    Passwords over bcrypt's 72-byte limit are not rejected here: they fail
    verification like any other wrong password, keeping the 401 uniform.
    """

    model_config = ConfigDict(str_strip_whitespace=False)

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=72)


class DevLoginRequest(BaseModel):
    """Request body for POST /api/dev-login (development deployments only)."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(default="dev-user", alias="userId", min_length=1, max_length=255)
    role: Optional[RoleEnum] = None


class UserCreate(BaseModel):
    """Request body for POST /api/users. Admins create pentester and client accounts."""

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=8, max_length=72)
    role: Literal["pentester", "client"]
    email: Optional[str] = Field(default=None, max_length=255)
    first_name: Optional[str] = Field(default=None, max_length=255)
    last_name: Optional[str] = Field(default=None, max_length=255)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: Optional[str]) -> Optional[str]:
        return _check_password_bytes(value)


class UserUpdate(BaseModel):
    """Request body for PUT /api/users/{id}. Omitted fields are left unchanged."""

    email: Optional[str] = Field(default=None, max_length=255)
    first_name: Optional[str] = Field(default=None, max_length=255)
    last_name: Optional[str] = Field(default=None, max_length=255)
    password: Optional[str] = Field(default=None, min_length=8, max_length=72)
    role: Optional[RoleEnum] = None
    is_active: Optional[bool] = None

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: Optional[str]) -> Optional[str]:
        return _check_password_bytes(value)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Client-facing user record. Never carries the password hash."""

    model_config = ConfigDict(frozen=True)

    id: str
    username: Optional[str] = None
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    profile_image_url: Optional[str] = None
    role: RoleEnum
    is_active: bool
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(**user.public_dict())


class LoginResponse(BaseModel):
    """Response for POST /api/local-login and POST /api/dev-login."""

    message: str = "Login successful"
    user: UserResponse


class AuditEntryResponse(BaseModel):
    """One audit trail row, as returned by GET /api/audit-logs."""

    model_config = ConfigDict(frozen=True)

    id: int
    user_id: Optional[str] = None
    action: str
    resource_type: str
    resource_id: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: str

    @classmethod
    def from_entry(cls, entry: AuditEntry) -> "AuditEntryResponse":
        return cls(**dataclasses.asdict(entry))


class ErrorResponse(BaseModel):
    """Error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    message: str
    code: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Response for GET /api/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = {}
