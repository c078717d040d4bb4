"""
auth/oidc.py -- OpenID Connect relying-party logic (authorization code + PKCE).

Pieces, in the order a login uses them:
  ProviderMetadataCache  -- lazy, process-lifetime cache of the IdP discovery
                            document. Injected, not global: the app builds one
                            in lifespan and tests build their own.
  OidcClient.build_authorization_url()
                         -- the redirect that starts the handshake.
  OidcClient.exchange_code()
                         -- redeems the code and returns IdentityClaims or an
                            AuthError value. Never raises for validation
                            failures; the callback must branch on the result.
  validate_claims()      -- the explicit checks run on top of authlib's own ID
                            token verification: expiry, issued-at, nonce and
                            groups normalisation. Kept as a pure function so
                            each check can be tested without an IdP.
  OidcClient.build_logout_url()
                         -- RP-initiated logout at end_session_endpoint.

Libraries:
  httpx    -- discovery and JWKS fetches (async, explicit timeout).
  authlib  -- AsyncOAuth2Client for the token request, authlib.jose for ID
              token signature/iss/aud/nonce verification, rfc7636 helper for
              the S256 code challenge.

Every outbound call uses OidcConfig.http_timeout (10s default). Nothing here
retries.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
import time
from collections.abc import Mapping
from typing import Any
from urllib.parse import urlsplit

import httpx
from authlib.common.urls import add_params_to_uri
from authlib.integrations.base_client import OAuthError
from authlib.integrations.httpx_client import AsyncOAuth2Client
from authlib.jose import JoseError, JsonWebKey, JsonWebToken
from authlib.jose.errors import ExpiredTokenError, InvalidClaimError
from authlib.oauth2.rfc7636 import create_s256_code_challenge

from auth.errors import AuthError, AuthErrorKind, DiscoveryError, NotConfiguredError
from auth.models import IdentityClaims, OidcHandshakeState, ProviderMetadata
from core.config import OidcConfig

logger = logging.getLogger("linkdash.auth.oidc")

CLOCK_SKEW_SECONDS = 60

# Asymmetric algorithms only: the JWKS never carries the client secret, so an
# HS256 ID token could not be verified against it anyway.
_id_token_jwt = JsonWebToken(["RS256", "RS384", "RS512", "PS256", "PS384", "PS512", "ES256", "ES384", "ES512"])

_REQUIRED_ENDPOINTS = ("authorization_endpoint", "token_endpoint", "jwks_uri")


def mask_secret(secret: str, show_chars: int = 4) -> str:
    """Mask a secret for logs: "abcd****...****wxyz", or "****" when short."""
    if not secret or len(secret) <= show_chars * 2:
        return "****"
    return f"{secret[:show_chars]}****...****{secret[-show_chars:]}"


# ---------------------------------------------------------------------------
# Provider metadata
# ---------------------------------------------------------------------------


def _parse_metadata(document: Any, issuer_url: str) -> ProviderMetadata:
    if not isinstance(document, dict):
        raise DiscoveryError("Discovery document is not a JSON object")

    missing = [key for key in _REQUIRED_ENDPOINTS if not isinstance(document.get(key), str) or not document[key]]
    if missing:
        raise DiscoveryError(f"Discovery document missing: {', '.join(missing)}")

    issuer = document.get("issuer")
    if not isinstance(issuer, str) or issuer.rstrip("/") != issuer_url.rstrip("/"):
        raise DiscoveryError(f"Discovery issuer {issuer!r} does not match configured issuer {issuer_url!r}")

    return ProviderMetadata(
        issuer=issuer,
        authorization_endpoint=document["authorization_endpoint"],
        token_endpoint=document["token_endpoint"],
        jwks_uri=document["jwks_uri"],
        end_session_endpoint=document.get("end_session_endpoint") or None,
        userinfo_endpoint=document.get("userinfo_endpoint") or None,
        raw=document,
    )


class ProviderMetadataCache:
    """Discovers the IdP configuration once and serves it for the process lifetime.

    Usage:
        cache = ProviderMetadataCache("https://idp.example.com")
        metadata = await cache.get()

    The first get() fetches /.well-known/openid-configuration. Concurrent
    callers wait on the same lock and receive the same object. A failed
    discovery raises DiscoveryError and leaves the cache empty, so the next
    call retries. The cached value is only assigned after it has been fully
    parsed and validated, so a half-populated cache is impossible.
    """

    def __init__(
        self,
        issuer_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.issuer_url = issuer_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._metadata: ProviderMetadata | None = None
        self._lock = asyncio.Lock()

    @property
    def discovery_url(self) -> str:
        return f"{self.issuer_url}/.well-known/openid-configuration"

    async def get(self) -> ProviderMetadata:
        if self._metadata is not None:
            return self._metadata
        async with self._lock:
            if self._metadata is None:
                self._metadata = await self._discover()
        return self._metadata

    def reset(self) -> None:
        """Forget the cached document. Only tests need this."""
        self._metadata = None

    async def _discover(self) -> ProviderMetadata:
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                response = await client.get(self.discovery_url)
                response.raise_for_status()
                document = response.json()
        except httpx.TimeoutException as exc:
            raise DiscoveryError(f"OIDC discovery timed out: {self.discovery_url}") from exc
        except httpx.HTTPStatusError as exc:
            raise DiscoveryError(f"OIDC discovery returned HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise DiscoveryError(f"Cannot reach OIDC provider: {exc}") from exc
        except ValueError as exc:
            raise DiscoveryError("OIDC discovery response is not JSON") from exc

        metadata = _parse_metadata(document, self.issuer_url)
        logger.info("Loaded OIDC provider metadata from %s", self.discovery_url)
        return metadata


# ---------------------------------------------------------------------------
# Claims validation
# ---------------------------------------------------------------------------


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _normalize_groups(value: Any) -> tuple[str, ...]:
    # Anything but a list (absent, a bare string, an object) means no groups.
    if not isinstance(value, list):
        return ()
    return tuple(g for g in value if isinstance(g, str))


def validate_claims(
    claims: Mapping[str, Any] | None,
    nonce: str,
    now: float | None = None,
) -> IdentityClaims | AuthError:
    """Apply the explicit post-verification checks and build IdentityClaims.

    Runs after the library has verified the signature. Duplicates its exp,
    iat and nonce checks on purpose so they do not depend on how the library
    happens to be configured.
    """
    if not claims:
        return AuthError(AuthErrorKind.NO_CLAIMS, "No claims in ID token")

    now = time.time() if now is None else now

    exp = claims.get("exp")
    if _is_number(exp) and exp < now - CLOCK_SKEW_SECONDS:
        return AuthError(AuthErrorKind.TOKEN_EXPIRED, "ID token has expired")

    iat = claims.get("iat")
    if _is_number(iat) and iat > now + CLOCK_SKEW_SECONDS:
        return AuthError(AuthErrorKind.TOKEN_ISSUED_IN_FUTURE, "ID token issued in the future")

    token_nonce = claims.get("nonce")
    if not isinstance(token_nonce, str) or not hmac.compare_digest(token_nonce.encode(), nonce.encode()):
        return AuthError(AuthErrorKind.NONCE_MISMATCH, "ID token nonce mismatch")

    subject = claims.get("sub")
    if not isinstance(subject, str) or not subject:
        return AuthError(AuthErrorKind.NO_CLAIMS, "ID token has no subject")

    return IdentityClaims(
        subject=subject,
        email=_optional_str(claims.get("email")),
        preferred_username=_optional_str(claims.get("preferred_username")),
        display_name=_optional_str(claims.get("name")),
        groups=_normalize_groups(claims.get("groups")),
    )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


def _origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


class OidcClient:
    """Relying-party operations bound to one OIDC configuration.

    config is None when OIDC is disabled; every operation then reports
    NOT_CONFIGURED (raised for the URL builder, returned for the exchange).
    transport is an optional httpx transport shared by all outbound calls --
    tests pass an httpx.MockTransport that plays the IdP.
    """

    def __init__(
        self,
        config: OidcConfig | None,
        metadata: ProviderMetadataCache | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self._transport = transport
        if metadata is None and config is not None:
            metadata = ProviderMetadataCache(config.issuer_url, timeout=config.http_timeout, transport=transport)
        self.metadata = metadata

    @property
    def enabled(self) -> bool:
        return self.config is not None

    @property
    def provider_name(self) -> str:
        return self.config.provider_name if self.config else "SSO"

    def _require_config(self) -> tuple[OidcConfig, ProviderMetadataCache]:
        if self.config is None or self.metadata is None:
            raise NotConfiguredError()
        return self.config, self.metadata

    # ------------------------------------------------------------------
    # Authorization request
    # ------------------------------------------------------------------

    async def build_authorization_url(self, handshake: OidcHandshakeState) -> str:
        """Return the IdP authorization URL for this handshake.

        Raises:
            NotConfiguredError: OIDC is disabled.
            DiscoveryError: provider metadata could not be loaded.
        """
        config, cache = self._require_config()
        metadata = await cache.get()

        params = {
            "client_id": config.client_id,
            "response_type": "code",
            "redirect_uri": config.redirect_uri,
            "scope": config.scopes,
            "state": handshake.state,
            "nonce": handshake.nonce,
            "code_challenge": create_s256_code_challenge(handshake.code_verifier),
            "code_challenge_method": "S256",
        }
        logger.debug("Built authorization URL for client %s", mask_secret(config.client_id))
        return add_params_to_uri(metadata.authorization_endpoint, params)

    # ------------------------------------------------------------------
    # Token exchange
    # ------------------------------------------------------------------

    async def exchange_code(
        self,
        code: str,
        returned_state: str,
        expected_state: str,
        nonce: str,
        code_verifier: str,
    ) -> IdentityClaims | AuthError:
        """Redeem an authorization code and validate the resulting identity.

        Steps short-circuit in order: state, configuration, discovery, token
        request, library ID token verification, then validate_claims(). The
        state comparison happens before any network call.
        """
        if not hmac.compare_digest(returned_state.encode(), expected_state.encode()):
            return AuthError(AuthErrorKind.STATE_MISMATCH, "Invalid state parameter")

        try:
            config, cache = self._require_config()
            metadata = await cache.get()
        except (NotConfiguredError, DiscoveryError) as exc:
            return exc.to_auth_error()

        try:
            token = await self._redeem_code(config, metadata, code, code_verifier)
        except OAuthError as exc:
            return AuthError(AuthErrorKind.TOKEN_REQUEST_FAILED, f"Token endpoint rejected the code: {exc.error}")
        except httpx.HTTPError as exc:
            return AuthError(AuthErrorKind.TOKEN_REQUEST_FAILED, f"Token request failed: {exc}")
        except ValueError as exc:
            return AuthError(AuthErrorKind.TOKEN_REQUEST_FAILED, f"Token response is not JSON: {exc}")

        id_token = token.get("id_token") if token else None
        if not id_token:
            return AuthError(AuthErrorKind.NO_CLAIMS, "Token response has no id_token")
        if not isinstance(id_token, str):
            return AuthError(AuthErrorKind.INVALID_ID_TOKEN, "id_token is not a compact JWT string")

        try:
            claims = await self._verify_id_token(config, metadata, id_token, nonce)
        except ExpiredTokenError:
            return AuthError(AuthErrorKind.TOKEN_EXPIRED, "ID token has expired")
        except InvalidClaimError as exc:
            if getattr(exc, "claim_name", None) == "nonce":
                return AuthError(AuthErrorKind.NONCE_MISMATCH, "ID token nonce mismatch")
            return AuthError(AuthErrorKind.INVALID_ID_TOKEN, f"ID token verification failed: {exc}")
        except (JoseError, ValueError, KeyError, TypeError) as exc:
            # authlib raises KeyError/TypeError on malformed JWKS entries.
            return AuthError(AuthErrorKind.INVALID_ID_TOKEN, f"ID token verification failed: {exc!r}")
        except httpx.HTTPError as exc:
            return AuthError(AuthErrorKind.INVALID_ID_TOKEN, f"Cannot fetch JWKS: {exc}")

        result = validate_claims(claims, nonce)
        if isinstance(result, IdentityClaims):
            logger.info("Verified ID token for subject %s", result.subject)
        return result

    async def _redeem_code(
        self,
        config: OidcConfig,
        metadata: ProviderMetadata,
        code: str,
        code_verifier: str,
    ) -> Mapping[str, Any]:
        async with AsyncOAuth2Client(
            client_id=config.client_id,
            client_secret=config.client_secret,
            redirect_uri=config.redirect_uri,
            timeout=config.http_timeout,
            transport=self._transport,
        ) as client:
            return await client.fetch_token(
                metadata.token_endpoint,
                grant_type="authorization_code",
                code=code,
                code_verifier=code_verifier,
            )

    async def _verify_id_token(
        self,
        config: OidcConfig,
        metadata: ProviderMetadata,
        id_token: str,
        nonce: str,
    ) -> dict[str, Any]:
        async with httpx.AsyncClient(transport=self._transport, timeout=config.http_timeout) as client:
            response = await client.get(metadata.jwks_uri)
            response.raise_for_status()
            jwks = response.json()

        key_set = JsonWebKey.import_key_set(jwks)
        claims = _id_token_jwt.decode(
            id_token,
            key_set,
            claims_options={
                "iss": {"essential": True, "value": metadata.issuer},
                "aud": {"essential": True, "value": config.client_id},
                "nonce": {"essential": True, "value": nonce},
            },
        )
        claims.validate(leeway=CLOCK_SKEW_SECONDS)
        return dict(claims)

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    async def build_logout_url(self, id_token_hint: str | None = None) -> str | None:
        """Return the IdP end-session URL, or None when a local logout must do.

        Discovery failures are logged and downgrade to a local-only logout.
        """
        if self.config is None or self.metadata is None:
            return None
        try:
            metadata = await self.metadata.get()
        except DiscoveryError as exc:
            logger.warning("Skipping IdP logout, discovery failed: %s", exc)
            return None

        if not metadata.end_session_endpoint:
            return None

        params = {
            "client_id": self.config.client_id,
            "post_logout_redirect_uri": f"{_origin(self.config.redirect_uri)}/login",
        }
        if id_token_hint:
            params["id_token_hint"] = id_token_hint
        return add_params_to_uri(metadata.end_session_endpoint, params)
