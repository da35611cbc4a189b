"""API endpoints for orchestrated commands."""

from __future__ import annotations

import logging
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, Query, Response, status
from fastapi.responses import FileResponse, PlainTextResponse

from command_orchestrator.dependencies import get_actor, get_orchestrator
from command_orchestrator.models.command import (
    Command,
    CommandBasic,
    CommandCreateRequest,
    CommandDetail,
    CommandStatus,
    CommandUpdateRequest,
)
from command_orchestrator.models.log import LogPage
from command_orchestrator.models.report import CheckReport, TestReport
from command_orchestrator.services.authorization import Actor
from command_orchestrator.services.log_store import entries_as_text, render_audit_line
from command_orchestrator.services.orchestrator import CommandOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/commands", tags=["commands"])

ActorDep = Annotated[Actor, Depends(get_actor)]
OrchestratorDep = Annotated[CommandOrchestrator, Depends(get_orchestrator)]
After = Annotated[int | None, Query(ge=-1, description="Return entries after this seq")]
Limit = Annotated[int | None, Query(ge=1, le=10000)]
LogFormat = Annotated[Literal["json", "text"], Query(alias="format")]


@router.post("", response_model=Command, status_code=status.HTTP_201_CREATED)
async def create_command(
    request: CommandCreateRequest,
    actor: ActorDep,
    orchestrator: OrchestratorDep,
) -> Command:
    """
    Create a command and queue its first run.

    Every target path must have been discovered for the repository first
    (see ``/api/v1/repos/{owner}/{name}/discover``).
    """
    return await orchestrator.create(request, actor)


@router.get("", response_model=list[CommandBasic])
async def list_commands(_: ActorDep, orchestrator: OrchestratorDep) -> list[CommandBasic]:
    """List all commands, oldest first."""
    return [CommandBasic.from_command(c) for c in await orchestrator.list_all()]


@router.get("/status/{command_status}", response_model=list[CommandBasic])
async def list_commands_by_status(
    command_status: CommandStatus,
    _: ActorDep,
    orchestrator: OrchestratorDep,
) -> list[CommandBasic]:
    commands = await orchestrator.list_by_status(command_status)
    return [CommandBasic.from_command(c) for c in commands]


@router.get("/{command_id}", response_model=CommandDetail)
async def get_command(command_id: str, _: ActorDep, orchestrator: OrchestratorDep) -> CommandDetail:
    """
    Get a command with its tool command line.

    A failed command keeps ``stage`` at the last completed stage; read
    ``failed_stage`` for the stage that failed.
    """
    return await orchestrator.detail(command_id)


@router.put("/{command_id}", response_model=Command)
async def update_command(
    command_id: str,
    request: CommandUpdateRequest,
    actor: ActorDep,
    orchestrator: OrchestratorDep,
) -> Command:
    """Replace the configuration of a command that is not running."""
    return await orchestrator.update(command_id, request, actor)


@router.delete("/{command_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_command(command_id: str, actor: ActorDep, orchestrator: OrchestratorDep) -> Response:
    """Remove a command with its logs, reports and archive (admin only)."""
    await orchestrator.remove(command_id, actor)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{command_id}/restart", response_model=Command)
async def restart_command(command_id: str, actor: ActorDep, orchestrator: OrchestratorDep) -> Command:
    return await orchestrator.restart(command_id, actor)


@router.post("/{command_id}/resume", response_model=Command)
async def resume_command(command_id: str, actor: ActorDep, orchestrator: OrchestratorDep) -> Command:
    return await orchestrator.resume(command_id, actor)


@router.post("/{command_id}/stop", response_model=Command, status_code=status.HTTP_202_ACCEPTED)
async def stop_command(command_id: str, actor: ActorDep, orchestrator: OrchestratorDep) -> Command:
    """
    Request a stop.

    The run halts at its next stage boundary (or kills the tool), so the
    returned status may still be ``running``.
    """
    return await orchestrator.stop(command_id, actor)


@router.post("/{command_id}/lock", response_model=Command)
async def lock_command(command_id: str, actor: ActorDep, orchestrator: OrchestratorDep) -> Command:
    return await orchestrator.lock(command_id, actor)


@router.post("/{command_id}/unlock", response_model=Command)
async def unlock_command(command_id: str, actor: ActorDep, orchestrator: OrchestratorDep) -> Command:
    return await orchestrator.unlock(command_id, actor)


@router.get("/{command_id}/execution_log", response_model=LogPage)
async def get_execution_log(
    command_id: str,
    _: ActorDep,
    orchestrator: OrchestratorDep,
    after: After = None,
    limit: Limit = None,
    fmt: LogFormat = "json",
) -> LogPage | PlainTextResponse:
    """
    Raw tool and git output.

    Poll with ``after=<next_cursor>`` to tail an active command. With
    ``format=text`` the lines are returned verbatim (ANSI codes included).
    """
    page = await orchestrator.execution_log(command_id, after=after, limit=limit)
    if fmt == "text":
        return PlainTextResponse(entries_as_text(page.entries))
    return page


@router.get("/{command_id}/audit_log", response_model=LogPage)
async def get_audit_log(
    command_id: str,
    _: ActorDep,
    orchestrator: OrchestratorDep,
    after: After = None,
    limit: Limit = None,
    fmt: LogFormat = "json",
) -> LogPage | PlainTextResponse:
    """Lifecycle transitions (who, what, when)."""
    page = await orchestrator.audit_log(command_id, after=after, limit=limit)
    if fmt == "text":
        return PlainTextResponse("".join(f"{render_audit_line(e)}\n" for e in page.entries))
    return page


@router.get("/{command_id}/check_reports", response_model=list[CheckReport])
async def get_check_reports(
    command_id: str, _: ActorDep, orchestrator: OrchestratorDep
) -> list[CheckReport]:
    return await orchestrator.check_reports(command_id)


@router.get("/{command_id}/test_reports", response_model=list[TestReport])
async def get_test_reports(
    command_id: str, _: ActorDep, orchestrator: OrchestratorDep
) -> list[TestReport]:
    return await orchestrator.test_reports(command_id)


@router.get("/{command_id}/artifact", response_class=FileResponse)
async def download_artifact(
    command_id: str, _: ActorDep, orchestrator: OrchestratorDep
) -> FileResponse:
    """Archived working tree of the last completed (or failed) run."""
    archive = await orchestrator.resolve_archive(command_id)
    logger.info("Serving artifact", extra={"command_id": command_id, "file": archive.name})
    return FileResponse(archive, media_type="application/zip", filename=archive.name)
