"""Client for the git hosting API (GitHub REST)."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx

from command_orchestrator.exceptions import HostingError, OperationTimeoutError

if TYPE_CHECKING:
    from command_orchestrator.models.command import RepoRef
    from command_orchestrator.services.git import GitService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ForkInfo:
    """Where the fork of a target repository lives."""

    clone_url: str
    html_url: str


def html_url_for(clone_url: str) -> str:
    """Browser URL for a clone URL (ssh remotes map to https, .git is dropped)."""
    url = clone_url.removesuffix(".git")
    if url.startswith("git@") and ":" in url:
        host, _, path = url[len("git@") :].partition(":")
        return f"https://{host}/{path}"
    return url


class GitHubClient:
    """
    Checks and forks target repositories through the GitHub REST API.

    When disabled (no token configured) the remote is checked with
    ``git ls-remote`` and the original repository stands in for the fork,
    which suits self-hosted or local repositories.
    """

    def __init__(
        self,
        git_service: GitService,
        *,
        enabled: bool = False,
        token: str | None = None,
        api_url: str = "https://api.github.com",
        timeout_seconds: int = 30,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the hosting client.

        Args:
            git_service: Used for remote checks when the API is disabled
            enabled: Whether to call the GitHub API
            token: Access token used for API calls
            api_url: Base URL of the REST API
            timeout_seconds: Timeout for HTTP requests in seconds
            transport: Optional httpx transport (tests)
        """
        self.git_service = git_service
        self.enabled = enabled
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {"Accept": "application/vnd.github+json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return httpx.AsyncClient(
            base_url=self.api_url,
            headers=headers,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, operation: str) -> dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.request(method, path)
        except httpx.TimeoutException as e:
            msg = f"GitHub {operation} timed out after {self.timeout}s"
            raise OperationTimeoutError(
                msg, context={"operation": operation, "path": path, "timeout_seconds": self.timeout}
            ) from e
        except httpx.HTTPError as e:
            msg = f"GitHub {operation} failed: {e}"
            raise HostingError(
                msg, context={"operation": operation, "path": path, "error_type": type(e).__name__}
            ) from e

        logger.debug(
            "GitHub API call",
            extra={"operation": operation, "path": path, "status_code": response.status_code},
        )
        if response.status_code >= 400:
            context = {
                "operation": operation,
                "path": path,
                "status_code": response.status_code,
                "detail": response.text[:500],
            }
            logger.error("GitHub API call failed", extra=context)
            msg = f"GitHub {operation} failed with HTTP {response.status_code}"
            raise HostingError(msg, context=context)
        return response.json()

    async def check_remote(self, repo: RepoRef) -> None:
        """
        Verify the target repository exists and is reachable.

        Raises:
            HostingError: If the repository is missing or inaccessible
            GitError: If ``git ls-remote`` fails (API disabled)
        """
        if not self.enabled:
            await asyncio.to_thread(self.git_service.ls_remote, repo.clone_url)
            return
        await self._request("GET", f"/repos/{repo.owner}/{repo.name}", "check_remote")

    async def fork(self, repo: RepoRef) -> ForkInfo:
        """
        Fork the target repository into the token owner's account.

        GitHub returns the existing fork when one already exists, so this
        is safe to repeat on resume.
        """
        if not self.enabled:
            return ForkInfo(clone_url=repo.clone_url, html_url=html_url_for(repo.clone_url))

        data = await self._request("POST", f"/repos/{repo.owner}/{repo.name}/forks", "fork")
        clone_url = data.get("clone_url")
        html_url = data.get("html_url")
        if not clone_url or not html_url:
            msg = "GitHub fork response lacks clone_url/html_url"
            raise HostingError(msg, context={"repo": repo.full_name})

        logger.info(
            "Forked repository",
            extra={"repo": repo.full_name, "fork": html_url},
        )
        return ForkInfo(clone_url=clone_url, html_url=html_url)
