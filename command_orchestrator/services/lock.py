"""
Administrative lock for commands.

The lock is a boolean flag on the command record, orthogonal to its run
status. It freezes a command for inspection: every mutating operation
consults ``ensure_unlocked`` first. Setting or clearing it never touches
status, stage or logs, and never interrupts an execution already running.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from command_orchestrator.exceptions import LockedError

if TYPE_CHECKING:
    from command_orchestrator.models.command import Command
    from command_orchestrator.services.command_store import CommandStore

logger = logging.getLogger(__name__)


class LockManager:
    """Gate consulted by mutating command operations."""

    def __init__(self, store: CommandStore) -> None:
        self.store = store

    @staticmethod
    def ensure_unlocked(command: Command, operation: str) -> None:
        """
        Refuse a mutating operation on a locked command.

        Raises:
            LockedError: If the command is locked
        """
        if command.locked:
            logger.info(
                "Operation blocked by lock",
                extra={"command_id": command.id, "operation": operation},
            )
            msg = f"Command '{command.id}' is locked"
            raise LockedError(
                msg,
                context={"command_id": command.id, "operation": operation},
            )

    async def set_locked(self, command_id: str, locked: bool) -> Command:
        """Set or clear the lock flag and return the updated record."""

        def _apply(command: Command) -> None:
            command.locked = locked

        command = await self.store.update(command_id, _apply)
        logger.info(
            "Command lock changed",
            extra={"command_id": command_id, "locked": locked},
        )
        return command

    async def lock(self, command_id: str) -> Command:
        return await self.set_locked(command_id, True)

    async def unlock(self, command_id: str) -> Command:
        return await self.set_locked(command_id, False)
