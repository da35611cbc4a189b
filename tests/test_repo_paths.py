"""Tests for repository target path discovery."""

from __future__ import annotations

from pathlib import Path

import pytest

from command_orchestrator.exceptions import GitError, InvalidConfigError, StorageError
from command_orchestrator.models.command import CommandConfig, RepoRef
from command_orchestrator.services.git import GitService
from command_orchestrator.services.repo_paths import RepoPathService


@pytest.fixture
def repo_paths(tmp_path: Path) -> RepoPathService:
    return RepoPathService(GitService(), tmp_path / "repos")


class TestDiscover:
    @pytest.mark.asyncio
    async def test_discover_records_paths(
        self, repo_paths: RepoPathService, repo_ref: RepoRef
    ) -> None:
        paths = await repo_paths.discover(repo_ref)

        assert paths == ["README.md", "src", "src/app.py", "src/util.py"]
        assert await repo_paths.available_paths(repo_ref) == paths

    @pytest.mark.asyncio
    async def test_discover_twice_pulls(
        self, repo_paths: RepoPathService, repo_ref: RepoRef
    ) -> None:
        await repo_paths.discover(repo_ref)
        assert await repo_paths.discover(repo_ref) == await repo_paths.available_paths(repo_ref)

    @pytest.mark.asyncio
    async def test_discover_unreachable_repository(
        self, repo_paths: RepoPathService, tmp_path: Path
    ) -> None:
        repo = RepoRef(owner="octo", name="gone", url=str(tmp_path / "gone.git"))
        with pytest.raises(GitError):
            await repo_paths.discover(repo)
        assert await repo_paths.available_paths(repo) == []


class TestValidate:
    @pytest.mark.asyncio
    async def test_empty_target_paths_always_valid(self, repo_paths: RepoPathService) -> None:
        await repo_paths.validate(CommandConfig(repo=RepoRef(owner="octo", name="demo")))

    @pytest.mark.asyncio
    async def test_recorded_paths_are_accepted(self, repo_paths: RepoPathService) -> None:
        repo = RepoRef(owner="octo", name="demo")
        await repo_paths.record(repo, ["src/app.py", "src", "src"])

        assert await repo_paths.available_paths(repo) == ["src", "src/app.py"]
        await repo_paths.validate(CommandConfig(repo=repo, target_paths=["src", "src/app.py"]))

    @pytest.mark.asyncio
    async def test_unknown_path_is_rejected(self, repo_paths: RepoPathService) -> None:
        repo = RepoRef(owner="octo", name="demo")
        await repo_paths.record(repo, ["src"])

        with pytest.raises(InvalidConfigError) as exc_info:
            await repo_paths.validate(CommandConfig(repo=repo, target_paths=["docs"]))

        assert exc_info.value.context["unknown_paths"] == ["docs"]
        assert exc_info.value.context["discovered"] is True

    @pytest.mark.asyncio
    async def test_undiscovered_repository_rejects_paths(
        self, repo_paths: RepoPathService
    ) -> None:
        repo = RepoRef(owner="octo", name="fresh")
        with pytest.raises(InvalidConfigError) as exc_info:
            await repo_paths.validate(CommandConfig(repo=repo, target_paths=["src"]))
        assert exc_info.value.context["discovered"] is False

    @pytest.mark.asyncio
    async def test_unreadable_path_file(self, repo_paths: RepoPathService) -> None:
        repo = RepoRef(owner="octo", name="demo")
        target = repo_paths.repos_dir / "paths" / "octo" / "demo.json"
        target.parent.mkdir(parents=True)
        target.write_text("[not json")

        with pytest.raises(StorageError):
            await repo_paths.available_paths(repo)
