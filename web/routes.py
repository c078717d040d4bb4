"""
web/routes.py -- Browser-facing sign-in routes and the dashboard home page.

These routes drive the OIDC authorization-code flow. They share app.state
with the API routes (same UserStore and OidcClient) but answer with
redirects and server-rendered HTML instead of JSON.

Routes:
  GET      /               -- dashboard home (auth required)
  GET      /login          -- login choice page, or straight to the IdP when
                              OIDC is the only method
  POST     /login/oidc     -- start the OIDC handshake (rate limited)
  GET      /auth/callback  -- IdP redirect target; finish the handshake
  GET|POST /logout         -- end the local session, then RP-initiated logout
                              at the IdP when it supports it

Failure policy:
  Every sign-in failure ends as 302 /login?error=oidc_failed. The page shows
  one generic message; the specific cause (IdP error, bad cookie, AuthError
  kind, provisioning failure) goes to the server log only.

Handshake cookie:
  "oidc_state" holds the signed OidcHandshakeState (auth/handshake.py). It is
  set when the handshake starts and cleared on every callback response,
  success or failure, so one handshake can never be replayed.
"""

import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse, Response
from fastapi.templating import Jinja2Templates
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from auth.dependencies import try_get_current_user
from auth.errors import AuthError, HandshakeDecodeError, OidcError
from auth.handshake import decode_handshake_state, encode_handshake_state, generate_handshake_state
from auth.oidc import OidcClient
from auth.provisioning import UserProvisioner
from auth.store import UserStore
from auth.tokens import end_session, start_session
from core.config import get_settings

logger = logging.getLogger("linkdash.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
router = APIRouter()

_settings = get_settings()

HANDSHAKE_COOKIE = "oidc_state"

# Whitelist mapping for ?error= query params on /login.
# The raw query param is NEVER passed to templates -- only the message from
# this dict is. Prevents reflected XSS via crafted error query strings.
# bad_credentials is produced by the local-auth form handler at LOCAL_LOGIN_PATH.
_ERROR_MESSAGES: dict[str, str] = {
    "oidc_failed": "Authentication failed. Please try again.",
    "bad_credentials": "Invalid username or password.",
}

_FAILED_LOGIN_URL = "/login?error=oidc_failed"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _safe_next(next_url: Optional[str]) -> str:
    """Validate a post-login redirect target. Only accept relative paths.

    Rejects absolute URLs (https://attacker.com) and protocol-relative ones
    (//attacker.com), both of which would leave the site after sign-in.
    Backslashes are rejected too because browsers normalise "/\\host" to
    "//host".
    """
    if next_url and next_url.startswith("/") and not next_url.startswith("//") and "\\" not in next_url:
        return next_url
    return "/"


def _failed_login() -> RedirectResponse:
    return RedirectResponse(_FAILED_LOGIN_URL, status_code=302)


def _set_handshake_cookie(response: Response, value: str) -> None:
    response.set_cookie(
        HANDSHAKE_COOKIE,
        value=value,
        max_age=_settings.oidc_state_max_age,
        path="/",
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
    )


def _clear_handshake_cookie(response: Response) -> None:
    response.delete_cookie(
        HANDSHAKE_COOKIE,
        path="/",
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
    )


async def _start_handshake(request: Request, next_url: str) -> RedirectResponse:
    """Generate fresh handshake secrets, stash them in the cookie, go to the IdP."""
    oidc: OidcClient = request.app.state.oidc
    handshake = generate_handshake_state(redirect_to=next_url)
    try:
        authorization_url = await oidc.build_authorization_url(handshake)
    except OidcError as exc:
        logger.error("Cannot start OIDC sign-in: %s", exc.to_auth_error())
        return _failed_login()

    response = RedirectResponse(authorization_url, status_code=302)
    _set_handshake_cookie(response, encode_handshake_state(handshake, _settings.secret_key))
    return response


async def _finish_handshake(request: Request, oidc: OidcClient) -> RedirectResponse:
    params = request.query_params

    idp_error = params.get("error")
    if idp_error:
        logger.warning("IdP returned error %r: %s", idp_error, params.get("error_description", ""))
        return _failed_login()

    code = params.get("code")
    returned_state = params.get("state")
    if not code or not returned_state:
        logger.warning("OIDC callback without code or state")
        return _failed_login()

    raw_cookie = request.cookies.get(HANDSHAKE_COOKIE)
    if not raw_cookie:
        logger.warning("OIDC callback without handshake cookie (expired or never started)")
        return _failed_login()

    try:
        handshake = decode_handshake_state(raw_cookie, _settings.secret_key, max_age=_settings.oidc_state_max_age)
    except HandshakeDecodeError as exc:
        logger.warning("Rejected handshake cookie: %s", exc)
        return _failed_login()

    result = await oidc.exchange_code(
        code=code,
        returned_state=returned_state,
        expected_state=handshake.state,
        nonce=handshake.nonce,
        code_verifier=handshake.code_verifier,
    )
    if isinstance(result, AuthError):
        logger.warning("OIDC token exchange failed: %s", result)
        return _failed_login()

    user_store: UserStore = request.app.state.user_store
    try:
        user = UserProvisioner(user_store, oidc.config).find_or_create(result)
        user_store.update_last_login(user.id)
    except (OidcError, SQLAlchemyError):
        logger.exception("Provisioning failed for OIDC subject %s", result.subject)
        return _failed_login()

    response = start_session(user, _safe_next(handshake.redirect_to))
    response.headers["Cache-Control"] = "no-store"
    return response


# ---------------------------------------------------------------------------
# GET / -- dashboard home
# ---------------------------------------------------------------------------


@router.get("/", response_class=HTMLResponse)
def home(request: Request) -> Response:
    user = try_get_current_user(request)
    if user is None:
        return RedirectResponse("/login", status_code=302)
    return templates.TemplateResponse(request, "index.html", {"user": user})


# ---------------------------------------------------------------------------
# Sign-in
# ---------------------------------------------------------------------------


@router.get("/login", response_class=HTMLResponse)
async def login_page(request: Request) -> Response:
    """Render the login choice page, or go straight to the IdP.

    The direct redirect only happens when OIDC is the sole method and the
    request is not itself the result of a failed attempt -- otherwise a
    broken IdP would bounce the browser between /login and the error page.
    """
    if try_get_current_user(request) is not None:
        return RedirectResponse("/", status_code=302)

    oidc: OidcClient = request.app.state.oidc
    error_code = request.query_params.get("error", "")
    next_url = _safe_next(request.query_params.get("next"))

    if oidc.enabled and not _settings.local_auth_enabled and not error_code:
        return await _start_handshake(request, next_url)

    return templates.TemplateResponse(
        request,
        "login.html",
        {
            "error_msg": _ERROR_MESSAGES.get(error_code),
            "oidc_enabled": oidc.enabled,
            "provider_name": oidc.provider_name,
            "local_auth_enabled": _settings.local_auth_enabled,
            "local_login_path": _settings.local_login_path,
            "next_url": next_url,
        },
    )


@limiter.limit(_settings.login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/login/oidc")
async def login_oidc(request: Request, next_url: str = Form("", alias="next")) -> RedirectResponse:
    """Start the OIDC handshake from the login page's SSO button."""
    return await _start_handshake(request, _safe_next(next_url))


@router.get("/auth/callback")
async def oidc_callback(request: Request) -> RedirectResponse:
    """Complete the handshake started by /login/oidc.

    The handshake cookie is single-use: it is cleared on whatever response
    this handler returns.
    """
    oidc: OidcClient = request.app.state.oidc
    if not oidc.enabled:
        return RedirectResponse("/login", status_code=302)

    try:
        response = await _finish_handshake(request, oidc)
    except Exception:
        logger.exception("OIDC callback failed")
        response = _failed_login()
    _clear_handshake_cookie(response)
    return response


# ---------------------------------------------------------------------------
# Sign-out
# ---------------------------------------------------------------------------


@router.api_route("/logout", methods=["GET", "POST"])
async def logout(request: Request) -> RedirectResponse:
    """End the local session, then hand off to the IdP's end_session_endpoint.

    The local session is destroyed first and unconditionally. When the IdP
    logout URL is available, the session-clearing Set-Cookie headers are
    copied onto the redirect to the IdP so the browser drops them either way.
    """
    local = end_session("/login")

    oidc: OidcClient = request.app.state.oidc
    logout_url = await oidc.build_logout_url()
    if logout_url is None:
        return local

    response = RedirectResponse(logout_url, status_code=302)
    for value in local.headers.getlist("set-cookie"):
        response.headers.append("set-cookie", value)
    return response
