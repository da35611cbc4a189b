"""API endpoints for repository target paths."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query
from fastapi import Path as PathParam
from pydantic import BaseModel

from command_orchestrator.dependencies import get_actor, get_orchestrator
from command_orchestrator.models.command import RepoRef
from command_orchestrator.services.authorization import Actor
from command_orchestrator.services.orchestrator import CommandOrchestrator

router = APIRouter(prefix="/api/v1/repos", tags=["repos"])

_NAME = r"^[A-Za-z0-9_.-]+$"

Owner = Annotated[str, PathParam(pattern=_NAME)]
Name = Annotated[str, PathParam(pattern=_NAME)]
CloneUrl = Annotated[str | None, Query(description="Clone URL when not hosted on GitHub")]


class AvailablePathsResponse(BaseModel):
    """Target paths a command may address in a repository."""

    repo: str
    paths: list[str]


@router.get("/{owner}/{name}/available_paths", response_model=AvailablePathsResponse)
async def available_paths(
    owner: Owner,
    name: Name,
    _: Annotated[Actor, Depends(get_actor)],
    orchestrator: Annotated[CommandOrchestrator, Depends(get_orchestrator)],
    url: CloneUrl = None,
) -> AvailablePathsResponse:
    repo = RepoRef(owner=owner, name=name, url=url)
    paths = await orchestrator.available_paths(repo)
    return AvailablePathsResponse(repo=repo.full_name, paths=paths)


@router.post("/{owner}/{name}/discover", response_model=AvailablePathsResponse)
async def discover_paths(
    owner: Owner,
    name: Name,
    actor: Annotated[Actor, Depends(get_actor)],
    orchestrator: Annotated[CommandOrchestrator, Depends(get_orchestrator)],
    url: CloneUrl = None,
) -> AvailablePathsResponse:
    """Clone or pull the repository and record its files and directories."""
    repo = RepoRef(owner=owner, name=name, url=url)
    paths = await orchestrator.discover_paths(repo, actor)
    return AvailablePathsResponse(repo=repo.full_name, paths=paths)
