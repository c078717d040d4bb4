"""
auth/errors.py -- Failure taxonomy for the OIDC sign-in flow.

Two shapes are used:
  AuthError        -- a value, returned (not raised) by OidcClient.exchange_code().
                      The callback handler must branch on it explicitly, so no
                      validation failure can slip through as an unhandled raise.
  OidcError family -- exceptions for failures that happen outside the exchange:
                      building the authorization URL, metadata discovery,
                      decoding the handshake cookie, username collisions.

Every one of these ends up as the same generic "Authentication failed"
redirect at the web layer. The kind and message are for server logs only.

Layer rule: stdlib only.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class AuthErrorKind(str, Enum):
    NOT_CONFIGURED = "not_configured"
    STATE_MISMATCH = "state_mismatch"
    NONCE_MISMATCH = "nonce_mismatch"
    NO_CLAIMS = "no_claims"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_ISSUED_IN_FUTURE = "token_issued_in_future"
    DECODE_ERROR = "decode_error"
    DISCOVERY_FAILURE = "discovery_failure"
    TOKEN_REQUEST_FAILED = "token_request_failed"
    INVALID_ID_TOKEN = "invalid_id_token"
    USERNAME_CONFLICT = "username_conflict"


@dataclass(frozen=True)
class AuthError:
    """A failed token exchange. Never shown to the user."""

    kind: AuthErrorKind
    message: str = ""

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}" if self.message else self.kind.value


class OidcError(Exception):
    """Base class for raised OIDC failures. Subclasses pin `kind`."""

    kind: AuthErrorKind = AuthErrorKind.NOT_CONFIGURED

    def to_auth_error(self) -> AuthError:
        return AuthError(self.kind, str(self))


class NotConfiguredError(OidcError):
    kind = AuthErrorKind.NOT_CONFIGURED

    def __init__(self, message: str = "OIDC is not enabled") -> None:
        super().__init__(message)


class DiscoveryError(OidcError):
    kind = AuthErrorKind.DISCOVERY_FAILURE


class HandshakeDecodeError(OidcError, ValueError):
    kind = AuthErrorKind.DECODE_ERROR


class UsernameTakenError(OidcError):
    """Raised by UserStore when an insert collides on the unique username."""

    kind = AuthErrorKind.USERNAME_CONFLICT

    def __init__(self, username: str) -> None:
        super().__init__(f"Username already taken: {username!r}")
        self.username = username
