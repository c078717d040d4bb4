"""
API request and response models for the LinkDash REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict

from core.config import Role

# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    username: str
    display_name: Optional[str] = None
    role: Role
    sso: bool


class AuthConfigResponse(BaseModel):
    """Response for GET /api/v1/auth/config.

    Public: the login page and external clients use it to decide which sign-in
    options to offer. Carries no secrets.
    """

    model_config = ConfigDict(frozen=True)

    oidc_enabled: bool
    local_auth_enabled: bool
    provider_name: str


class UserResponse(BaseModel):
    """One row of GET /api/v1/auth/users (admin only)."""

    model_config = ConfigDict(frozen=True)

    id: str
    username: str
    display_name: Optional[str] = None
    role: Role
    sso: bool
    created_at: str
    last_login: Optional[str] = None
