"""
tests/conftest.py -- Shared test fixtures for LinkDash integration tests.

This module provides:
  - FakeIdp: an in-process OpenID provider behind httpx.MockTransport. It
    serves discovery, JWKS and token endpoints, checks the PKCE verifier
    against the challenge it saw at authorization time, and issues real
    RS256-signed ID tokens.
  - _make_test_store(): creates an isolated in-memory user DB
  - _patch_lifespan(): wires the test store and OIDC client into app.state,
    bypassing real startup
  - api_client: TestClient with an admin JWT for API integration tests
  - web_client: TestClient with follow_redirects=False and OIDC wired to a
    fresh FakeIdp, for sign-in flow tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.

Environment variables must be set before any app import: get_settings() is
cached on first use and several modules read it at import time.
"""

from __future__ import annotations

import base64
import hashlib
import os
import secrets
import time
import uuid
from collections import Counter
from collections.abc import Generator
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import parse_qsl, urlsplit

# CRITICAL: before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver"]')
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import httpx
import pytest
from authlib.jose import JsonWebKey, jwt
from fastapi.testclient import TestClient

from asgi import app
from auth.models import User
from auth.oidc import OidcClient
from auth.store import UserStore
from auth.tokens import create_access_token
from core.config import OidcConfig, Role

ISSUER = "https://idp.example.test"
CLIENT_ID = "linkdash-test"
CLIENT_SECRET = "test-client-secret-value"
REDIRECT_URI = "http://testserver/auth/callback"
KEY_ID = "test-key"


def s256(verifier: str) -> str:
    """RFC 7636 S256 challenge, computed independently of the code under test."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def make_oidc_config(**overrides: Any) -> OidcConfig:
    values: dict[str, Any] = {
        "issuer_url": ISSUER,
        "client_id": CLIENT_ID,
        "client_secret": CLIENT_SECRET,
        "redirect_uri": REDIRECT_URI,
        "admin_group": "linkdash-admins",
        "advanced_group": "linkdash-power",
        "provider_name": "Example SSO",
    }
    values.update(overrides)
    return OidcConfig(**values)


# ---------------------------------------------------------------------------
# Fake identity provider
# ---------------------------------------------------------------------------


class FakeIdp:
    """A scriptable OpenID provider.

    Tests flip the public attributes to simulate provider behaviour:
      discovery_status / discovery_overrides -- break or alter discovery
      end_session     -- advertise end_session_endpoint
      token_error     -- make the token endpoint answer {"error": ...}
      omit_id_token   -- leave id_token out of the token response
      jwks_override   -- serve this document from /jwks instead of the real key
      profile         -- standard claims added to every ID token
      claim_overrides -- claims forced into the next ID tokens (None removes)
    """

    def __init__(self, signing_key, issuer: str = ISSUER) -> None:
        self.issuer = issuer
        self.signing_key = signing_key
        public = signing_key.as_dict(is_private=False)
        public.update({"kid": KEY_ID, "use": "sig", "alg": "RS256"})
        self.public_jwk = public

        self.discovery_status = 200
        self.discovery_overrides: dict[str, Any] = {}
        self.end_session = True
        self.token_error: str | None = None
        self.omit_id_token = False
        self.jwks_override: Any = None
        self.profile: dict[str, Any] = {
            "preferred_username": "jdoe",
            "email": "jdoe@example.test",
            "name": "Jane Doe",
            "groups": [],
        }
        self.claim_overrides: dict[str, Any] = {}

        self.calls: Counter[str] = Counter()
        self.token_requests: list[dict[str, str]] = []
        self._grants: dict[str, dict[str, str]] = {}
        self.transport = httpx.MockTransport(self.handle)

    # -- endpoints --------------------------------------------------------

    def discovery_document(self) -> dict[str, Any]:
        document = {
            "issuer": self.issuer,
            "authorization_endpoint": f"{self.issuer}/authorize",
            "token_endpoint": f"{self.issuer}/token",
            "jwks_uri": f"{self.issuer}/jwks",
            "userinfo_endpoint": f"{self.issuer}/userinfo",
            "response_types_supported": ["code"],
            "code_challenge_methods_supported": ["S256"],
        }
        if self.end_session:
            document["end_session_endpoint"] = f"{self.issuer}/logout"
        document.update(self.discovery_overrides)
        return document

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls[path] += 1
        if path == "/.well-known/openid-configuration":
            if self.discovery_status != 200:
                return httpx.Response(self.discovery_status, text="unavailable")
            return httpx.Response(200, json=self.discovery_document())
        if path == "/jwks":
            if self.jwks_override is not None:
                return httpx.Response(200, json=self.jwks_override)
            return httpx.Response(200, json={"keys": [self.public_jwk]})
        if path == "/token":
            return self._token(request)
        return httpx.Response(404)

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = dict(parse_qsl(request.content.decode()))
        self.token_requests.append(form)
        if self.token_error:
            return httpx.Response(400, json={"error": self.token_error, "error_description": "scripted failure"})

        grant = self._grants.pop(form.get("code", ""), None)
        if grant is None or s256(form.get("code_verifier", "")) != grant["code_challenge"]:
            return httpx.Response(400, json={"error": "invalid_grant"})

        body: dict[str, Any] = {"access_token": secrets.token_urlsafe(16), "token_type": "Bearer", "expires_in": 300}
        if not self.omit_id_token:
            body["id_token"] = self.id_token(grant["subject"], grant["nonce"])
        return httpx.Response(200, json=body)

    # -- test helpers -----------------------------------------------------

    def authorize(self, authorization_url: str, subject: str = "sub-00000001") -> tuple[str, str]:
        """Play the user approving the sign-in. Returns (code, state)."""
        query = dict(parse_qsl(urlsplit(authorization_url).query))
        code = secrets.token_urlsafe(16)
        self._grants[code] = {
            "subject": subject,
            "nonce": query["nonce"],
            "code_challenge": query["code_challenge"],
        }
        return code, query["state"]

    def grant(self, subject: str, nonce: str, code_verifier: str) -> str:
        """Register a code directly, bypassing the authorization redirect."""
        code = secrets.token_urlsafe(16)
        self._grants[code] = {"subject": subject, "nonce": nonce, "code_challenge": s256(code_verifier)}
        return code

    def id_token(self, subject: str, nonce: str, **overrides: Any) -> str:
        now = int(time.time())
        claims: dict[str, Any] = {
            "iss": self.issuer,
            "aud": CLIENT_ID,
            "sub": subject,
            "iat": now,
            "exp": now + 300,
            "nonce": nonce,
        }
        claims.update(self.profile)
        claims.update(self.claim_overrides)
        claims.update(overrides)
        claims = {k: v for k, v in claims.items() if v is not None}
        header = {"alg": "RS256", "kid": KEY_ID}
        return jwt.encode(header, claims, self.signing_key.as_pem(is_private=True)).decode("ascii")


@pytest.fixture(scope="session")
def signing_key():
    return JsonWebKey.generate_key("RSA", 2048, is_private=True)


@pytest.fixture()
def idp(signing_key) -> FakeIdp:
    return FakeIdp(signing_key)


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_store(db_suffix: str) -> UserStore:
    """Create an isolated named shared-memory SQLite store.

    Args:
        db_suffix: Unique string appended to the DB name so tests don't
                   share state.
    """
    return UserStore(db_url=f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true")


@pytest.fixture()
def store() -> Generator[UserStore, None, None]:
    user_store = _make_test_store(uuid.uuid4().hex)
    yield user_store
    user_store.close()


def _patch_lifespan(user_store: UserStore, oidc: OidcClient):
    """Return an async context manager that replaces the real lifespan."""

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.oidc = oidc
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# Client fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, str, UserStore], None, None]:
    """Yield (client, admin_token, store) for API integration tests.

    OIDC is disabled here; the admin user is created directly in the store.
    """
    user_store = _make_test_store(f"api_{uuid.uuid4().hex}")
    admin = User(username="testadmin", role=Role.admin, display_name="Test Admin")
    uid = user_store.create_user(admin)
    token = create_access_token(user_id=uid, username="testadmin", role=Role.admin.value, expire_seconds=3600)

    app.router.lifespan_context = _patch_lifespan(user_store, OidcClient(None))

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, user_store

    user_store.close()


@pytest.fixture()
def web_client(idp: FakeIdp, store: UserStore) -> Generator[TestClient, None, None]:
    """Yield a TestClient whose OIDC client talks to the FakeIdp.

    follow_redirects=False is essential: the tests assert on redirect
    locations and Set-Cookie headers, which are invisible once the client
    follows the redirect.
    """
    oidc = OidcClient(make_oidc_config(), transport=idp.transport)
    app.router.lifespan_context = _patch_lifespan(store, oidc)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client
