"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and routes do
the work; these only own the shape.

Layer rule: no imports from api/ or web/. Role comes from core/config.py
because the settings layer validates OIDC_DEFAULT_ROLE against it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from core.config import Role


@dataclass
class User:
    """A local dashboard account.

    oidc_subject is the IdP's stable `sub` claim and the durable link between
    the IdP identity and this row. It is None for accounts that only ever
    used local auth. hashed_password / temp_password belong to the local-auth
    collaborator; OIDC-provisioned users get None / False and this package
    never reads them.
    """

    username: str
    role: Role
    id: int | None = None
    public_id: str | None = None
    display_name: str | None = None
    oidc_subject: str | None = None
    hashed_password: str | None = None
    temp_password: bool = False
    created_at: str | None = None
    last_login: str | None = None


@dataclass(frozen=True)
class OidcHandshakeState:
    """Correlation secrets for one login attempt.

    Lives only in the browser's oidc_state cookie between the authorization
    redirect and the callback.
    """

    state: str
    nonce: str
    code_verifier: str
    redirect_to: str | None = None


@dataclass(frozen=True)
class IdentityClaims:
    """The subset of validated ID token claims the provisioning step needs."""

    subject: str
    email: str | None = None
    preferred_username: str | None = None
    display_name: str | None = None
    groups: tuple[str, ...] = ()


@dataclass(frozen=True)
class ProviderMetadata:
    """IdP endpoints from the OIDC discovery document."""

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    jwks_uri: str
    end_session_endpoint: str | None = None
    userinfo_endpoint: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)
