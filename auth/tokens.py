"""
auth/tokens.py -- Session issuance: JWT encode/decode and the session cookie.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       user_id, username, role, and expiry. Verification returns None on any
       failure -- the dependency layer turns that into a 401 or a redirect.

  Cookie: "access_token", httponly, samesite=lax, secure when
       SECURE_COOKIES=true. max_age matches the JWT expiry so both expire
       together.

  SECRET_KEY: sourced from core.config.get_settings(). The Settings class
       validates the key at startup: dev mode (DEBUG=true) auto-generates a
       random key with a warning; production mode refuses to start without one.

start_session() / end_session() are the only way the sign-in flow touches
session state. Both return a ready-made 302 so the orchestrators never build
cookies themselves.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from fastapi.responses import RedirectResponse
from jose import JWTError, jwt

from core.config import get_settings

if TYPE_CHECKING:
    from starlette.responses import Response

    from auth.models import User

logger = logging.getLogger("linkdash.auth.tokens")

_settings = get_settings()

_ALGORITHM = "HS256"

SESSION_COOKIE = "access_token"


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(user_id: int, username: str, role: str, expire_seconds: int = 0) -> str:
    """Encode a signed JWT with user identity and configurable expiry.

    Args:
        user_id:        Numeric user ID stored in the DB.
        username:       Username stored as the JWT subject claim.
        role:           Role value ("admin", "advanced-user", "managed-user").
        expire_seconds: Session duration in seconds. If 0 (default), uses
                        Settings.token_expire_seconds.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    expire = datetime.now(timezone.utc) + timedelta(seconds=duration)
    payload = {
        "sub": username,
        "user_id": user_id,
        "role": role,
        "exp": expire,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure."""
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
        if "user_id" not in payload or "role" not in payload:
            return None
        return payload
    except JWTError:
        return None


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookie(response: Response, token: str, expire_seconds: int = 0) -> None:
    """Write the JWT access token as an httpOnly cookie on the response."""
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    response.set_cookie(
        SESSION_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=duration,
    )


def clear_auth_cookie(response: Response) -> None:
    response.delete_cookie(SESSION_COOKIE, httponly=True, samesite="lax", secure=_settings.secure_cookies)


# ---------------------------------------------------------------------------
# Session issuance
# ---------------------------------------------------------------------------


def start_session(user: User, redirect_to: str = "/") -> RedirectResponse:
    """Return a 302 to redirect_to carrying a fresh session cookie for user.

    redirect_to must already be sanitised by the caller.
    """
    token = create_access_token(user_id=user.id, username=user.username, role=user.role.value)
    response = RedirectResponse(url=redirect_to, status_code=302)
    set_auth_cookie(response, token)
    logger.info("Session started for %s", user.username)
    return response


def end_session(redirect_to: str = "/login") -> RedirectResponse:
    """Return a 302 to redirect_to that destroys the session cookie."""
    response = RedirectResponse(url=redirect_to, status_code=302)
    clear_auth_cookie(response)
    return response
