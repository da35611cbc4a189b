"""Storage for check/test reports produced by the tool."""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from command_orchestrator.exceptions import StorageError
from command_orchestrator.models.report import CheckReport, Report, TestReport

logger = logging.getLogger(__name__)

_check_list = TypeAdapter(list[CheckReport])
_test_list = TypeAdapter(list[TestReport])


class ReportStore:
    """Keeps the reports of each command in ``<data>/reports/<id>/{check,test}.json``."""

    def __init__(self, reports_dir: Path) -> None:
        self.reports_dir = reports_dir
        self._lock = asyncio.Lock()

    def _path(self, command_id: str, kind: str) -> Path:
        return self.reports_dir / command_id / f"{kind}.json"

    def _load(self, command_id: str, kind: str) -> list[Report]:
        path = self._path(command_id, kind)
        if not path.exists():
            return []
        adapter = _check_list if kind == "check" else _test_list
        try:
            return list(adapter.validate_json(path.read_bytes()))
        except (OSError, ValidationError) as e:
            context = {
                "command_id": command_id,
                "kind": kind,
                "error": str(e),
                "error_type": type(e).__name__,
            }
            logger.error("Failed to load reports", extra=context)
            msg = f"Failed to load {kind} reports of '{command_id}'"
            raise StorageError(msg, context=context) from e

    def _save(self, command_id: str, kind: str, reports: list[Report]) -> None:
        path = self._path(command_id, kind)
        temp_file = path.with_suffix(".json.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with temp_file.open("w", encoding="utf-8") as f:
                json.dump([r.model_dump(mode="json") for r in reports], f, indent=2)
                f.flush()
            temp_file.replace(path)
        except OSError as e:
            if temp_file.exists():
                temp_file.unlink()
            msg = f"Failed to save {kind} reports of '{command_id}'"
            raise StorageError(msg, context={"command_id": command_id, "error": str(e)}) from e

    async def record(self, command_id: str, reports: list[Report]) -> int:
        """
        Append reports to a command.

        Args:
            command_id: Command identifier
            reports: Check and/or test reports from one tool run

        Returns:
            Number of reports recorded
        """
        if not reports:
            return 0

        async with self._lock:
            for kind in ("check", "test"):
                new = [r for r in reports if r.kind == kind]
                if new:
                    self._save(command_id, kind, self._load(command_id, kind) + new)

        logger.info(
            "Recorded tool reports",
            extra={"command_id": command_id, "count": len(reports)},
        )
        return len(reports)

    async def list_check_reports(self, command_id: str) -> list[CheckReport]:
        async with self._lock:
            return self._load(command_id, "check")  # type: ignore[return-value]

    async def list_test_reports(self, command_id: str) -> list[TestReport]:
        async with self._lock:
            return self._load(command_id, "test")  # type: ignore[return-value]

    async def clear(self, command_id: str) -> None:
        """Discard all reports of a command."""
        async with self._lock:
            command_dir = self.reports_dir / command_id
            if not command_dir.exists():
                return
            try:
                shutil.rmtree(command_dir)
            except OSError as e:
                msg = f"Failed to clear reports of '{command_id}'"
                raise StorageError(msg, context={"command_id": command_id, "error": str(e)}) from e
