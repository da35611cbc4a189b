"""Role checks for orchestrator operations."""

from __future__ import annotations

import logging
import secrets
from enum import IntEnum

from pydantic import BaseModel

from command_orchestrator.exceptions import PermissionDeniedError

logger = logging.getLogger(__name__)


class Role(IntEnum):
    """Roles in increasing order of privilege."""

    NONE = 0
    USER = 1
    ADMIN = 2

    @classmethod
    def parse(cls, value: str) -> Role:
        try:
            return cls[value.strip().upper()]
        except KeyError:
            msg = f"Unknown role: {value!r}"
            raise ValueError(msg) from None


class Actor(BaseModel):
    """Authenticated caller of an operation."""

    name: str
    role: Role = Role.NONE


SYSTEM_ACTOR = Actor(name="system", role=Role.ADMIN)


class AuthorizationService:
    """Resolves bearer tokens to actors and checks their roles."""

    def __init__(self, users: dict[str, Actor] | None = None) -> None:
        """
        Args:
            users: Mapping of bearer token to actor
        """
        self._users = dict(users or {})

    def authenticate(self, token: str) -> Actor | None:
        """Actor owning ``token``, or None when the token is unknown."""
        for known, actor in self._users.items():
            if secrets.compare_digest(known, token):
                return actor
        return None

    def check_role(self, actor: Actor, required: Role) -> None:
        """
        Ensure ``actor`` holds at least ``required``.

        Raises:
            PermissionDeniedError: If the actor's role is insufficient
        """
        if actor.role < required:
            logger.warning(
                "Permission denied",
                extra={"actor": actor.name, "role": actor.role.name, "required": required.name},
            )
            msg = f"Role {required.name.lower()} required"
            raise PermissionDeniedError(
                msg,
                context={"actor": actor.name, "required_role": required.name.lower()},
            )
