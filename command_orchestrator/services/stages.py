"""
Pipeline stage model.

The pipeline is a fixed, ordered list of stage descriptors. Stages flagged
with ``requires_changes`` are skipped when the tool produced no diff.
"""

from __future__ import annotations

from dataclasses import dataclass

from command_orchestrator.models.command import Stage


@dataclass(frozen=True)
class StageDescriptor:
    """Static metadata for one pipeline stage."""

    stage: Stage
    label: str
    requires_changes: bool = False


STAGES: tuple[StageDescriptor, ...] = (
    StageDescriptor(Stage.BEGIN, "Begin"),
    StageDescriptor(Stage.CHECKED_REMOTE, "Check the remote repository"),
    StageDescriptor(Stage.FORKED, "Fork it"),
    StageDescriptor(Stage.CLONED_OR_PULLED, "git clone/pull"),
    StageDescriptor(Stage.CHECKED_OUT, "git checkout -b <branch>"),
    StageDescriptor(Stage.TOOL_EXECUTED, "Execute the tool"),
    StageDescriptor(Stage.CHANGES_ADDED, "git add ."),
    StageDescriptor(Stage.CHANGES_COMMITTED, "git commit -m ..."),
    StageDescriptor(Stage.CHANGES_PUSHED, "git push", requires_changes=True),
    StageDescriptor(Stage.COMMIT_ID_RESOLVED, "Get commit id", requires_changes=True),
    StageDescriptor(Stage.END, "End"),
)

_INDEX: dict[Stage, int] = {d.stage: i for i, d in enumerate(STAGES)}


def describe(stage: Stage) -> StageDescriptor:
    """Return the descriptor for a stage."""
    return STAGES[_INDEX[stage]]


def stage_index(stage: Stage) -> int:
    """Position of a stage in the pipeline (Begin is 0)."""
    return _INDEX[stage]


def is_after(stage: Stage, other: Stage) -> bool:
    """True when ``stage`` comes strictly later in the pipeline than ``other``."""
    return _INDEX[stage] > _INDEX[other]


def next_stage(current: Stage, has_changes: bool) -> Stage | None:
    """
    Next applicable stage after ``current``.

    Args:
        current: Last completed stage
        has_changes: Whether the tool produced a working-tree diff

    Returns:
        The next stage to execute, or None when ``current`` is End
    """
    for descriptor in STAGES[_INDEX[current] + 1 :]:
        if descriptor.requires_changes and not has_changes:
            continue
        return descriptor.stage
    return None
