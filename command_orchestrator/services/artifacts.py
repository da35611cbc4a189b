"""
Artifact manager for archived working trees.

One current archive per command at ``<artifacts>/<command_id>.zip``. A new
archive is written to a temporary file in the same directory and moved into
place with an atomic replace, so readers never see a partial zip and the
previous archive stays available until the new one is complete.
"""

from __future__ import annotations

import asyncio
import logging
import os
import zipfile
from pathlib import Path
from uuid import uuid4

from command_orchestrator.exceptions import NotFoundError, StorageError
from command_orchestrator.utils.error_handling import log_errors

logger = logging.getLogger(__name__)

EXCLUDED_DIRS = frozenset({".git"})


def _zip_tree(source: Path, target: Path) -> int:
    """Write ``source`` into a zip at ``target``; returns the number of files."""
    count = 0
    with zipfile.ZipFile(
        target, "w", compression=zipfile.ZIP_DEFLATED, strict_timestamps=False
    ) as zf:
        for root, dirs, files in os.walk(source):
            dirs[:] = sorted(d for d in dirs if d not in EXCLUDED_DIRS)
            for name in sorted(files):
                file_path = Path(root) / name
                if file_path.is_symlink():
                    continue
                zf.write(file_path, file_path.relative_to(source).as_posix())
                count += 1
    return count


class ArtifactManager:
    """Produces and serves the archived working tree of each command."""

    def __init__(self, artifacts_dir: Path) -> None:
        """
        Initialize the artifact manager.

        Args:
            artifacts_dir: Directory holding one archive per command
        """
        self.artifacts_dir = artifacts_dir

    def archive_path(self, command_id: str) -> Path:
        """Deterministic archive location for a command."""
        return self.artifacts_dir / f"{command_id}.zip"

    @log_errors("archive_artifact")
    async def archive(self, command_id: str, working_tree: Path) -> Path:
        """
        Archive a working tree for a command.

        Args:
            command_id: Command identifier
            working_tree: Directory to archive (``.git`` is excluded)

        Returns:
            Path of the current archive

        Raises:
            StorageError: If the tree is missing or the archive cannot be written
        """
        if not working_tree.is_dir():
            msg = "Working tree does not exist"
            raise StorageError(
                msg,
                context={"command_id": command_id, "working_tree": str(working_tree)},
            )

        target = self.archive_path(command_id)
        temp_file = self.artifacts_dir / f".{command_id}.{uuid4().hex[:8]}.zip.tmp"
        try:
            self.artifacts_dir.mkdir(parents=True, exist_ok=True)
            file_count = await asyncio.to_thread(_zip_tree, working_tree, temp_file)
            os.replace(temp_file, target)
        except OSError as e:
            if temp_file.exists():
                temp_file.unlink()
            context = {
                "command_id": command_id,
                "working_tree": str(working_tree),
                "error": str(e),
                "error_type": type(e).__name__,
            }
            msg = f"Failed to archive working tree of '{command_id}'"
            raise StorageError(msg, context=context) from e

        logger.info(
            "Archived working tree",
            extra={
                "command_id": command_id,
                "archive": str(target),
                "files_count": file_count,
            },
        )
        return target

    async def retrieve(self, command_id: str) -> Path:
        """
        Path of a command's current archive.

        Raises:
            NotFoundError: If no archive has been produced yet
        """
        target = self.archive_path(command_id)
        if not target.is_file():
            msg = f"No artifact found for command '{command_id}'"
            raise NotFoundError(msg, context={"command_id": command_id})
        return target

    async def remove(self, command_id: str) -> bool:
        """Delete a command's archive; returns whether one existed."""
        target = self.archive_path(command_id)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            msg = f"Failed to remove artifact of '{command_id}'"
            raise StorageError(msg, context={"command_id": command_id, "error": str(e)}) from e
        logger.info("Removed artifact", extra={"command_id": command_id})
        return True
