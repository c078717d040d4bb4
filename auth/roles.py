"""
auth/roles.py -- IdP group membership to dashboard role mapping.

Pure and total: no I/O, never raises. The OIDC config is passed in rather than
read from settings so the mapping can be exercised with any configuration.
"""

from __future__ import annotations

from collections.abc import Iterable

from core.config import OidcConfig, Role


def map_groups_to_role(groups: Iterable[str], config: OidcConfig | None) -> Role:
    """Translate IdP groups into one of the three dashboard roles.

    Precedence: admin group, then advanced group, then the configured default.
    With OIDC unconfigured every identity is a managed-user. A group name
    that is not configured (None) never matches.
    """
    if config is None:
        return Role.managed_user

    memberships = set(groups)
    if config.admin_group and config.admin_group in memberships:
        return Role.admin
    if config.advanced_group and config.advanced_group in memberships:
        return Role.advanced_user
    return Role(config.default_role)
