"""
auth/handshake.py -- Generation and cookie encoding of the OIDC handshake state.

The handshake state (state, nonce, PKCE verifier, post-login target) is never
stored server side. It rides in the oidc_state cookie between the
authorization redirect and the callback, so the browser round-trip is its
storage and concurrent logins cannot interfere with each other.

Cookie format:
  <base64url(JSON payload), unpadded>.<hex HMAC-SHA256(SECRET_KEY, payload)>

The payload carries its own issue time (iat). decode_handshake_state() rejects
a cookie older than max_age, so a replayed cookie expires even when the
browser ignores Max-Age.

The payload is readable by anyone holding the cookie; the tag only makes it
tamper-evident. decode_handshake_state() fails closed: any malformed,
truncated, re-signed or wrongly-typed value raises HandshakeDecodeError and
never yields a partial object.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time

from auth.errors import HandshakeDecodeError
from auth.models import OidcHandshakeState

# secrets.token_urlsafe(64) yields 86 unreserved characters -- inside the
# 43..128 range RFC 7636 allows for a code_verifier.
_VERIFIER_BYTES = 64
_TOKEN_BYTES = 32

_REQUIRED_FIELDS = ("state", "nonce", "code_verifier")


def generate_handshake_state(redirect_to: str | None = None) -> OidcHandshakeState:
    """Return fresh, independent random state, nonce and PKCE verifier."""
    return OidcHandshakeState(
        state=secrets.token_urlsafe(_TOKEN_BYTES),
        nonce=secrets.token_urlsafe(_TOKEN_BYTES),
        code_verifier=secrets.token_urlsafe(_VERIFIER_BYTES),
        redirect_to=redirect_to,
    )


def _sign(payload: str, secret_key: str) -> str:
    return hmac.new(secret_key.encode(), payload.encode(), hashlib.sha256).hexdigest()


def encode_handshake_state(state: OidcHandshakeState, secret_key: str, now: int | None = None) -> str:
    """Serialize a handshake state into a cookie-safe opaque string."""
    body = json.dumps(
        {
            "iat": int(time.time()) if now is None else now,
            "state": state.state,
            "nonce": state.nonce,
            "code_verifier": state.code_verifier,
            "redirect_to": state.redirect_to,
        },
        separators=(",", ":"),
        sort_keys=True,
    )
    payload = base64.urlsafe_b64encode(body.encode("utf-8")).decode("ascii").rstrip("=")
    return f"{payload}.{_sign(payload, secret_key)}"


def decode_handshake_state(
    value: str,
    secret_key: str,
    max_age: int | None = None,
    now: int | None = None,
) -> OidcHandshakeState:
    """Parse and verify a cookie produced by encode_handshake_state().

    With max_age set, a cookie issued more than max_age seconds ago is
    rejected as expired.

    Raises:
        HandshakeDecodeError: on any malformed, truncated or tampered input.
    """
    if not value or "." not in value:
        raise HandshakeDecodeError("Handshake cookie is empty or has no signature")

    payload, _, tag = value.rpartition(".")
    if not payload or not hmac.compare_digest(tag.encode(), _sign(payload, secret_key).encode()):
        raise HandshakeDecodeError("Handshake cookie signature mismatch")

    try:
        raw = base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4))
        data = json.loads(raw.decode("utf-8"))
    except (binascii.Error, ValueError) as exc:
        # json.JSONDecodeError and UnicodeDecodeError are both ValueErrors.
        raise HandshakeDecodeError(f"Handshake cookie is not valid JSON: {exc}") from exc

    if not isinstance(data, dict):
        raise HandshakeDecodeError("Handshake cookie payload is not an object")

    for name in _REQUIRED_FIELDS:
        if not isinstance(data.get(name), str) or not data[name]:
            raise HandshakeDecodeError(f"Handshake cookie field {name!r} is missing or invalid")

    redirect_to = data.get("redirect_to")
    if redirect_to is not None and not isinstance(redirect_to, str):
        raise HandshakeDecodeError("Handshake cookie field 'redirect_to' is invalid")

    issued_at = data.get("iat")
    if not isinstance(issued_at, int) or isinstance(issued_at, bool):
        raise HandshakeDecodeError("Handshake cookie field 'iat' is missing or invalid")
    if max_age is not None:
        current = int(time.time()) if now is None else now
        if current - issued_at > max_age:
            raise HandshakeDecodeError(f"Handshake cookie expired {current - issued_at - max_age}s ago")

    return OidcHandshakeState(
        state=data["state"],
        nonce=data["nonce"],
        code_verifier=data["code_verifier"],
        redirect_to=redirect_to,
    )
