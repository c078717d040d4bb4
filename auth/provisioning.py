"""
auth/provisioning.py -- Just-in-time user provisioning from validated OIDC claims.

find_or_create() links an IdP identity to exactly one local user:
  - returning users are found by their stable `sub` and have their role
    re-derived from the current groups (IdP group changes take effect on the
    next sign-in);
  - first-time users are created with a username taken from
    preferred_username, then email, then sub;
  - a username already held by another account is retried exactly once as
    "<username>_<first 8 chars of sub>". A second collision, or any other
    store failure, propagates to the caller.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging

from auth.errors import UsernameTakenError
from auth.models import IdentityClaims, User
from auth.roles import map_groups_to_role
from auth.store import UserStore
from core.config import OidcConfig

logger = logging.getLogger("linkdash.auth.provisioning")

_MAX_CREATE_ATTEMPTS = 2


def candidate_username(claims: IdentityClaims) -> str:
    return claims.preferred_username or claims.email or claims.subject


def collision_username(username: str, subject: str) -> str:
    return f"{username}_{subject[:8]}"


class UserProvisioner:
    """Finds or creates the local user for an IdP identity."""

    def __init__(self, store: UserStore, config: OidcConfig | None) -> None:
        self.store = store
        self.config = config

    def find_or_create(self, claims: IdentityClaims) -> User:
        role = map_groups_to_role(claims.groups, self.config)

        existing = self.store.get_by_oidc_subject(claims.subject)
        if existing is not None:
            if existing.role != role:
                logger.info(
                    "Role for %s changed at IdP: %s -> %s", existing.username, existing.role.value, role.value
                )
                self.store.update_role(existing.id, role)
                existing.role = role
            return existing

        username = candidate_username(claims)
        for attempt in range(_MAX_CREATE_ATTEMPTS):
            try:
                return self.store.create_oidc_user(
                    username=username,
                    role=role,
                    oidc_subject=claims.subject,
                    display_name=claims.display_name,
                )
            except UsernameTakenError:
                if attempt + 1 == _MAX_CREATE_ATTEMPTS:
                    raise
                suffixed = collision_username(username, claims.subject)
                logger.warning("Username %s is taken, retrying as %s", username, suffixed)
                username = suffixed

        # Unreachable.
        raise UsernameTakenError(username)
