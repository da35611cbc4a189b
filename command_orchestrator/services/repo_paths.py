"""Discovery of the target paths a command may address in a repository."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING

from command_orchestrator.exceptions import InvalidConfigError, StorageError

if TYPE_CHECKING:
    from command_orchestrator.models.command import CommandConfig, RepoRef
    from command_orchestrator.services.git import GitService

logger = logging.getLogger(__name__)


class RepoPathService:
    """
    Keeps the list of files and directories available in each repository.

    Paths are discovered from a cached clone and recorded on disk; command
    creation only accepts target paths recorded here.
    """

    def __init__(self, git_service: GitService, repos_dir: Path) -> None:
        self.git_service = git_service
        self.repos_dir = repos_dir
        self._lock = asyncio.Lock()

    def _clone_path(self, repo: RepoRef) -> Path:
        return self.repos_dir / "clones" / repo.owner / repo.name

    def _paths_file(self, repo: RepoRef) -> Path:
        return self.repos_dir / "paths" / repo.owner / f"{repo.name}.json"

    async def discover(self, repo: RepoRef) -> list[str]:
        """
        Clone or pull the repository and record its paths.

        Raises:
            GitError: If the repository cannot be cloned or pulled
            StorageError: If the path list cannot be saved
        """
        async with self._lock:
            clone_path = self._clone_path(repo)
            await asyncio.to_thread(self.git_service.clone_or_pull, repo.clone_url, clone_path)
            paths = await asyncio.to_thread(self.git_service.list_paths, clone_path)
            self._save(repo, paths)

        logger.info(
            "Discovered repository paths",
            extra={"repo": repo.full_name, "paths_count": len(paths)},
        )
        return paths

    def _save(self, repo: RepoRef, paths: list[str]) -> None:
        target = self._paths_file(repo)
        temp_file = target.with_suffix(".json.tmp")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with temp_file.open("w", encoding="utf-8") as f:
                json.dump(paths, f)
                f.flush()
            temp_file.replace(target)
        except OSError as e:
            if temp_file.exists():
                temp_file.unlink()
            msg = f"Failed to save paths of {repo.full_name}"
            raise StorageError(msg, context={"repo": repo.full_name, "error": str(e)}) from e

    async def record(self, repo: RepoRef, paths: list[str]) -> None:
        """Record a known path list without cloning (imports, tests)."""
        async with self._lock:
            self._save(repo, sorted(set(paths)))

    async def available_paths(self, repo: RepoRef) -> list[str]:
        """Recorded paths of a repository (empty if never discovered)."""
        target = self._paths_file(repo)
        if not target.exists():
            return []
        try:
            data = json.loads(target.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            msg = f"Failed to load paths of {repo.full_name}"
            raise StorageError(msg, context={"repo": repo.full_name, "error": str(e)}) from e
        return [p for p in data if isinstance(p, str)]

    async def validate(self, config: CommandConfig) -> None:
        """
        Check that every target path was previously discovered.

        Raises:
            InvalidConfigError: If a target path is unknown for the repository
        """
        if not config.target_paths:
            return
        available = set(await self.available_paths(config.repo))
        unknown = [p for p in config.target_paths if p not in available]
        if unknown:
            msg = "Target path is not available in the repository"
            raise InvalidConfigError(
                msg,
                context={
                    "repo": config.repo.full_name,
                    "unknown_paths": unknown,
                    "discovered": bool(available),
                },
            )
