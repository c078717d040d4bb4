"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  GET  /api/v1/auth/config  -- which sign-in methods are enabled (public)
  GET  /api/v1/auth/me      -- current user info (requires auth)
  GET  /api/v1/auth/users   -- list all users (admin only)

Sign-in itself is browser-only (web/routes.py): the OIDC flow needs
redirects and a handshake cookie, which a JSON API cannot drive.

Users are identified by public_id in every response. The integer primary
key never leaves the server.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import AuthConfigResponse, MeResponse, UserResponse
from auth.dependencies import get_current_user, require_admin
from auth.models import User
from auth.oidc import OidcClient
from auth.store import UserStore
from core.config import get_settings

router = APIRouter()


@router.get("/auth/config", response_model=AuthConfigResponse)
async def auth_config(request: Request) -> AuthConfigResponse:
    oidc: OidcClient = request.app.state.oidc
    return AuthConfigResponse(
        oidc_enabled=oidc.enabled,
        local_auth_enabled=get_settings().local_auth_enabled,
        provider_name=oidc.provider_name,
    )


@router.get("/auth/me", response_model=MeResponse)
async def me(current_user: User = Depends(get_current_user)) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    return MeResponse(
        user_id=current_user.public_id,
        username=current_user.username,
        display_name=current_user.display_name,
        role=current_user.role,
        sso=current_user.oidc_subject is not None,
    )


@router.get("/auth/users", response_model=list[UserResponse])
async def list_users(
    request: Request,
    current_user: User = Depends(require_admin),
) -> list[UserResponse]:
    """List all user accounts with their role and SSO link status. Admin only."""
    user_store: UserStore = request.app.state.user_store
    return [_user_to_response(u) for u in user_store.list_users()]


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.public_id,
        username=user.username,
        display_name=user.display_name,
        role=user.role,
        sso=user.oidc_subject is not None,
        created_at=user.created_at or "",
        last_login=user.last_login,
    )
