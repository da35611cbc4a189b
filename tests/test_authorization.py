"""Tests for bearer token authentication and role checks."""

from __future__ import annotations

import pytest

from command_orchestrator.exceptions import PermissionDeniedError
from command_orchestrator.services.authorization import Actor, AuthorizationService, Role


@pytest.fixture
def authorization() -> AuthorizationService:
    return AuthorizationService(
        {
            "user-token": Actor(name="alice", role=Role.USER),
            "admin-token": Actor(name="root", role=Role.ADMIN),
        }
    )


class TestRole:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [("none", Role.NONE), ("user", Role.USER), (" Admin ", Role.ADMIN)],
    )
    def test_parse(self, value: str, expected: Role) -> None:
        assert Role.parse(value) == expected

    def test_parse_unknown(self) -> None:
        with pytest.raises(ValueError):
            Role.parse("superuser")

    def test_roles_are_ordered(self) -> None:
        assert Role.NONE < Role.USER < Role.ADMIN


class TestAuthorizationService:
    def test_authenticate_known_token(self, authorization: AuthorizationService) -> None:
        actor = authorization.authenticate("admin-token")
        assert actor is not None
        assert actor.name == "root"

    def test_authenticate_unknown_token(self, authorization: AuthorizationService) -> None:
        assert authorization.authenticate("guess") is None
        assert authorization.authenticate("") is None

    def test_admin_satisfies_user_role(self, authorization: AuthorizationService) -> None:
        authorization.check_role(Actor(name="root", role=Role.ADMIN), Role.USER)

    def test_insufficient_role(self, authorization: AuthorizationService) -> None:
        with pytest.raises(PermissionDeniedError) as exc_info:
            authorization.check_role(Actor(name="alice", role=Role.USER), Role.ADMIN)

        assert exc_info.value.message == "Role admin required"
        assert exc_info.value.context == {"actor": "alice", "required_role": "admin"}
