"""
Durable storage for command records.

Each command is a JSON document under ``<data>/commands/<id>.json``, written
atomically (temp file + replace) so a crash never leaves a torn record.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from pathlib import Path

from pydantic import ValidationError

from command_orchestrator.exceptions import NotFoundError, StorageError
from command_orchestrator.models.command import Command, CommandStatus, utc_now

logger = logging.getLogger(__name__)


class CommandStore:
    """JSON-file backed repository of Command records."""

    def __init__(self, commands_dir: Path) -> None:
        """
        Initialize the store.

        Args:
            commands_dir: Directory holding one JSON file per command
        """
        self.commands_dir = commands_dir
        self._lock = asyncio.Lock()

    def _path(self, command_id: str) -> Path:
        if not command_id or "/" in command_id or command_id.startswith("."):
            msg = f"Command '{command_id}' not found"
            raise NotFoundError(msg, context={"command_id": command_id})
        return self.commands_dir / f"{command_id}.json"

    def _read(self, command_id: str) -> Command:
        path = self._path(command_id)
        if not path.exists():
            msg = f"Command '{command_id}' not found"
            raise NotFoundError(msg, context={"command_id": command_id})
        try:
            return Command.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError, ValueError) as e:
            context = {
                "command_id": command_id,
                "path": str(path),
                "error": str(e),
                "error_type": type(e).__name__,
            }
            logger.error("Failed to read command record", extra=context)
            msg = f"Failed to read command '{command_id}'"
            raise StorageError(msg, context=context) from e

    def _write(self, command: Command) -> None:
        path = self._path(command.id)
        temp_file = path.with_suffix(".json.tmp")
        try:
            self.commands_dir.mkdir(parents=True, exist_ok=True)
            with temp_file.open("w", encoding="utf-8") as f:
                f.write(command.model_dump_json(indent=2))
                f.flush()
            temp_file.replace(path)
        except OSError as e:
            context = {
                "command_id": command.id,
                "path": str(path),
                "error": str(e),
                "error_type": type(e).__name__,
            }
            logger.error("Failed to save command record", extra=context)
            if temp_file.exists():
                temp_file.unlink()
            msg = f"Failed to save command '{command.id}'"
            raise StorageError(msg, context=context) from e

    async def create(self, command: Command) -> Command:
        """Persist a new command record."""
        async with self._lock:
            if self._path(command.id).exists():
                msg = f"Command '{command.id}' already exists"
                raise StorageError(msg, context={"command_id": command.id})
            self._write(command)

        logger.info(
            "Created command record",
            extra={"command_id": command.id, "repo": command.config.repo.full_name},
        )
        return command

    async def get(self, command_id: str) -> Command:
        """
        Load a command record.

        Raises:
            NotFoundError: If no such command exists
            StorageError: If the record cannot be read
        """
        async with self._lock:
            return self._read(command_id)

    async def update(self, command_id: str, mutator: Callable[[Command], None]) -> Command:
        """
        Read-modify-write a command record.

        The mutator receives the freshest persisted record, so concurrent
        writers (facade and runner) never overwrite each other's fields.

        Args:
            command_id: Command identifier
            mutator: Function applying in-place changes to the record

        Returns:
            The persisted record after the mutation
        """
        async with self._lock:
            command = self._read(command_id)
            mutator(command)
            command.updated_at = utc_now()
            self._write(command)
            return command

    async def delete(self, command_id: str) -> None:
        """Delete a command record."""
        async with self._lock:
            path = self._path(command_id)
            if not path.exists():
                msg = f"Command '{command_id}' not found"
                raise NotFoundError(msg, context={"command_id": command_id})
            try:
                path.unlink()
            except OSError as e:
                msg = f"Failed to delete command '{command_id}'"
                raise StorageError(msg, context={"command_id": command_id, "error": str(e)}) from e

        logger.info("Deleted command record", extra={"command_id": command_id})

    async def list_all(self) -> list[Command]:
        """All command records, oldest first."""
        async with self._lock:
            if not self.commands_dir.exists():
                return []
            commands = [self._read(path.stem) for path in self.commands_dir.glob("*.json")]
        return sorted(commands, key=lambda c: c.created_at)

    async def list_by_status(self, status: CommandStatus) -> list[Command]:
        """Command records in the given status, oldest first."""
        return [c for c in await self.list_all() if c.status == status]
