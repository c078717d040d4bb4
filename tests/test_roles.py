"""
tests/test_roles.py -- Unit tests for IdP group to role mapping and role ranking.
"""

from __future__ import annotations

import pytest

from auth.roles import map_groups_to_role
from core.config import OidcConfig, Role

from conftest import make_oidc_config


class TestMapGroupsToRole:
    def test_unconfigured_is_managed_user(self) -> None:
        assert map_groups_to_role(["linkdash-admins"], None) is Role.managed_user

    def test_admin_group(self) -> None:
        assert map_groups_to_role(["staff", "linkdash-admins"], make_oidc_config()) is Role.admin

    def test_admin_wins_over_advanced(self) -> None:
        groups = ["linkdash-power", "linkdash-admins"]
        assert map_groups_to_role(groups, make_oidc_config()) is Role.admin

    def test_advanced_group(self) -> None:
        assert map_groups_to_role(["linkdash-power"], make_oidc_config()) is Role.advanced_user

    def test_no_matching_group_uses_default(self) -> None:
        assert map_groups_to_role(["staff"], make_oidc_config()) is Role.managed_user

    def test_configured_default_role(self) -> None:
        config = make_oidc_config(default_role=Role.advanced_user)
        assert map_groups_to_role([], config) is Role.advanced_user

    def test_unset_groups_never_match(self) -> None:
        """An unset group name must not match an empty or missing group."""
        config = make_oidc_config(admin_group=None, advanced_group=None)
        assert map_groups_to_role(["", "linkdash-admins"], config) is Role.managed_user

    def test_group_match_is_exact(self) -> None:
        assert map_groups_to_role(["LinkDash-Admins", "linkdash-admins-old"], make_oidc_config()) is Role.managed_user

    def test_accepts_any_iterable(self) -> None:
        assert map_groups_to_role(("linkdash-power",), make_oidc_config()) is Role.advanced_user
        assert map_groups_to_role(iter(["linkdash-admins"]), make_oidc_config()) is Role.admin


class TestRole:
    def test_values(self) -> None:
        assert [r.value for r in Role] == ["admin", "advanced-user", "managed-user"]

    def test_rank_order(self) -> None:
        assert Role.admin.rank > Role.advanced_user.rank > Role.managed_user.rank

    @pytest.mark.parametrize("value", ["admin", "advanced-user", "managed-user"])
    def test_parses_from_string(self, value: str) -> None:
        assert Role(value).value == value

    def test_oidc_config_default_role(self) -> None:
        config = OidcConfig(issuer_url="https://i", client_id="c", client_secret="s", redirect_uri="https://r/cb")
        assert config.default_role is Role.managed_user
