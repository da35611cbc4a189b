import logging
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

import git

from command_orchestrator.exceptions import GitError

logger = logging.getLogger(__name__)

__all__ = ["GitError", "GitService"]

_GIT_ENV = {"GIT_TERMINAL_PROMPT": "0"}  # Prevent interactive prompts


class GitService:
    """
    Handles git operations on command working trees.

    All methods are blocking (GitPython shells out to git); the execution
    runner calls them from a worker thread. Network operations kill their
    git subprocess after ``timeout_seconds`` so the thread always returns.
    """

    def __init__(
        self,
        user_name: str = "Command Orchestrator",
        user_email: str = "orchestrator@local",
        auth_token: str | None = None,
        timeout_seconds: float | None = None,
    ):
        self.user_name = user_name
        self.user_email = user_email
        self.auth_token = auth_token
        self.timeout_seconds = timeout_seconds

    def _authenticated_url(self, url: str) -> str:
        """Embed the access token into https remotes."""
        if not self.auth_token:
            return url
        parts = urlsplit(url)
        if parts.scheme != "https" or "@" in parts.netloc:
            return url
        netloc = f"x-access-token:{self.auth_token}@{parts.netloc}"
        return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))

    def _redact(self, text: str) -> str:
        if self.auth_token:
            return text.replace(self.auth_token, "***")
        return text

    def _open(self, path: Path, operation: str) -> git.Repo:
        try:
            return git.Repo(path)
        except (git.InvalidGitRepositoryError, git.NoSuchPathError) as e:
            msg = f"Not a git working tree: {path}"
            raise GitError(
                msg,
                context={"operation": operation, "path": str(path), "error_type": type(e).__name__},
            ) from e

    def _fail(self, operation: str, path: Path, e: Exception, **context: object) -> GitError:
        ctx: dict[str, object] = {
            "operation": operation,
            "path": str(path),
            "error": self._redact(str(e)),
            "error_type": type(e).__name__,
            **context,
        }
        logger.error(f"Git {operation} failed", extra=ctx)
        return GitError(f"{operation.capitalize()} failed: {self._redact(str(e))}", context=ctx)

    def ls_remote(self, url: str) -> None:
        """
        Verify a remote repository is reachable.

        Raises:
            GitError: If the remote cannot be listed
        """
        try:
            git.cmd.Git().ls_remote(
                "--heads",
                self._authenticated_url(url),
                env=_GIT_ENV,
                kill_after_timeout=self.timeout_seconds,
            )
        except git.GitCommandError as e:
            raise self._fail("ls-remote", Path(), e, url=url) from e

    def clone_or_pull(self, url: str, path: Path) -> str:
        """
        Clone ``url`` into ``path``, or pull if a clone already exists.

        Returns:
            "cloned" or "pulled"

        Raises:
            GitError: If clone or pull fails
        """
        if (path / ".git").exists():
            repo = self._open(path, "pull")
            try:
                with repo.git.custom_environment(**_GIT_ENV):
                    origin = repo.remotes.origin
                    origin.fetch(kill_after_timeout=self.timeout_seconds)
                    if repo.head.is_detached or repo.active_branch.tracking_branch() is None:
                        logger.debug(
                            "No upstream for current branch, fetched only",
                            extra={"path": str(path)},
                        )
                    else:
                        origin.pull(kill_after_timeout=self.timeout_seconds)
            except (git.GitCommandError, AttributeError, ValueError) as e:
                raise self._fail("pull", path, e) from e
            self._configure_author(repo)
            logger.info("Pulled working tree", extra={"path": str(path)})
            return "pulled"

        logger.info(
            "Cloning repository",
            extra={"url": url, "path": str(path)},
        )
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Repo.clone_from starts git detached, without the kill timeout
            git.cmd.Git().clone(
                "--",
                self._authenticated_url(url),
                str(path),
                env=_GIT_ENV,
                kill_after_timeout=self.timeout_seconds,
            )
            repo = git.Repo(path)
        except git.GitCommandError as e:
            raise self._fail("clone", path, e, url=url) from e
        self._configure_author(repo)
        return "cloned"

    def _configure_author(self, repo: git.Repo) -> None:
        with repo.config_writer() as config:
            config.set_value("user", "name", self.user_name)
            config.set_value("user", "email", self.user_email)

    def checkout(self, path: Path, branch: str) -> None:
        """
        Switch to ``branch``, creating it if needed.

        A new local branch starts from ``origin/<branch>`` when an earlier run
        already pushed it, so later pushes fast-forward; otherwise from HEAD.

        Raises:
            GitError: If checkout fails
        """
        repo = self._open(path, "checkout")
        remote_branch = f"origin/{branch}"
        try:
            if branch in repo.heads:
                repo.heads[branch].checkout()
            elif remote_branch in {ref.name for ref in repo.refs}:
                repo.git.checkout("-b", branch, "--track", remote_branch)
            else:
                repo.git.checkout("-b", branch)
        except git.GitCommandError as e:
            raise self._fail("checkout", path, e, branch=branch) from e
        logger.debug("Checked out branch", extra={"path": str(path), "branch": branch})

    def has_changes(self, path: Path) -> bool:
        """True when the working tree has modified, staged or untracked files."""
        repo = self._open(path, "status")
        return repo.is_dirty(index=True, working_tree=True, untracked_files=True)

    def get_changed_files(self, path: Path) -> list[str]:
        """
        Get list of changed files (modified, staged, or untracked).

        Returns:
            List of paths relative to the working tree root
        """
        repo = self._open(path, "status")
        changed = [item.a_path for item in repo.index.diff(None) if item.a_path]
        if repo.head.is_valid():
            changed.extend(item.a_path for item in repo.index.diff("HEAD") if item.a_path)
        changed.extend(repo.untracked_files)
        return sorted(set(changed))

    def add_all(self, path: Path) -> int:
        """
        Stage every change in the working tree (``git add -A``).

        Returns:
            Number of changed files staged
        """
        repo = self._open(path, "add")
        changed = self.get_changed_files(path)
        try:
            repo.git.add(A=True)
        except git.GitCommandError as e:
            raise self._fail("add", path, e) from e
        logger.debug("Staged changes", extra={"path": str(path), "files_count": len(changed)})
        return len(changed)

    def commit(self, path: Path, message: str) -> bool:
        """
        Commit staged changes.

        Returns:
            True if a commit was created, False when nothing was staged
        """
        repo = self._open(path, "commit")
        try:
            if repo.head.is_valid() and not repo.index.diff("HEAD"):
                logger.info("Nothing to commit", extra={"path": str(path)})
                return False
            repo.index.commit(message)
        except git.GitCommandError as e:
            raise self._fail("commit", path, e, commit_message=message) from e
        logger.info("Git commit completed", extra={"path": str(path), "commit_message": message})
        return True

    def push(self, path: Path, branch: str) -> None:
        """
        Push ``branch`` to origin and set it as upstream.

        Raises:
            GitError: If push is rejected or fails
        """
        repo = self._open(path, "push")
        try:
            with repo.git.custom_environment(**_GIT_ENV):
                infos = repo.remotes.origin.push(
                    refspec=f"{branch}:{branch}",
                    set_upstream=True,
                    kill_after_timeout=self.timeout_seconds,
                )
            infos.raise_if_error()
        except git.GitCommandError as e:
            raise self._fail("push", path, e, branch=branch) from e
        logger.info("Git push completed", extra={"path": str(path), "branch": branch})

    def resolve_commit_id(self, path: Path) -> str:
        """Hex SHA of the working tree's HEAD commit."""
        repo = self._open(path, "rev-parse")
        try:
            return repo.head.commit.hexsha
        except ValueError as e:
            raise self._fail("rev-parse", path, e) from e

    def list_paths(self, path: Path) -> list[str]:
        """Every directory and file of a working tree, excluding ``.git``."""
        if not path.is_dir():
            return []
        found: list[str] = []
        for item in sorted(path.rglob("*")):
            relative = item.relative_to(path)
            if relative.parts and relative.parts[0] == ".git":
                continue
            found.append(relative.as_posix())
        return found
