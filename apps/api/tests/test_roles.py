"""
Tests for role normalization and precedence
"""
import pytest

from core.roles import Role, is_staff, normalize_role, resolve_final_role, role_rank, user_role


class TestNormalizeRole:

    @pytest.mark.parametrize("value,expected", [
        ("athlete", Role.ATHLETE),
        ("Coach", Role.COACH),
        (" superadmin ", Role.SUPERADMIN),
        ("user", Role.ATHLETE),
        ("creator", Role.COACH),
        ("assistant_coach", Role.ASSISTANT),
        ("guest", None),
        ("", None),
        (None, None),
        ("owner", None),
    ])
    def test_values(self, value, expected):
        assert normalize_role(value) == expected

    def test_total_order(self):
        ordered = [Role.ATHLETE, Role.ASSISTANT, Role.COACH, Role.ADMIN, Role.SUPERADMIN]
        ranks = [role_rank(r) for r in ordered]
        assert ranks == sorted(ranks)
        assert len(set(ranks)) == len(ranks)
        assert role_rank(None) < role_rank(Role.ATHLETE)


class TestResolveFinalRole:

    def test_new_user_gets_target(self):
        assert resolve_final_role(None, Role.ATHLETE) == Role.ATHLETE

    def test_upgrade(self):
        assert resolve_final_role("athlete", Role.COACH) == Role.COACH

    def test_never_downgrades(self):
        assert resolve_final_role("admin", Role.COACH) == Role.ADMIN
        assert resolve_final_role("coach", Role.ATHLETE) == Role.COACH
        assert resolve_final_role("superadmin", Role.ADMIN) == Role.SUPERADMIN

    def test_legacy_roles_are_compared_after_normalizing(self):
        assert resolve_final_role("creator", Role.ATHLETE) == Role.COACH
        assert resolve_final_role("user", Role.ASSISTANT) == Role.ASSISTANT
        assert resolve_final_role("guest", Role.ATHLETE) == Role.ATHLETE


class TestUserRole:

    def test_role_field(self):
        assert user_role({"role": "creator"}) == Role.COACH

    def test_roles_list_takes_highest(self):
        assert user_role({"roles": ["athlete", "admin", "coach"]}) == Role.ADMIN

    def test_missing(self):
        assert user_role(None) is None
        assert user_role({"roles": ["guest"]}) is None

    def test_is_staff(self):
        assert is_staff("admin") and is_staff("superadmin")
        assert not is_staff("coach")
