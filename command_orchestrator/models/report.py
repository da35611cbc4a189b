"""Models for reports emitted by the code-modification tool."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

Severity = Literal["trivial", "minor", "major", "critical"]


class ModelUsageMetrics(BaseModel):
    """Token usage reported by the tool for one file."""

    model_config = ConfigDict(extra="allow")

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class CheckIssue(BaseModel):
    """Single issue found by a check run."""

    model_config = ConfigDict(extra="allow")

    short_description: str = ""
    detailed_explaination: str = ""
    suggestion: str = ""
    issue_line_begin: int = 0
    issue_line_end: int = 0
    issue_reference_urls: list[str] = Field(default_factory=list)
    severity: Severity | None = None
    severity_reason: str = ""


class CheckReport(BaseModel):
    """Per-file result of the check command."""

    model_config = ConfigDict(extra="allow", frozen=True)

    kind: Literal["check"] = "check"
    path: str
    has_issue: bool = False
    overall_severity: Severity | None = None
    issues: list[CheckIssue] = Field(default_factory=list)
    fixed_code: str = ""
    original_code: str = ""
    model_usage_metrics: ModelUsageMetrics = Field(default_factory=ModelUsageMetrics)


class TestReport(BaseModel):
    """Per-file result of the test command."""

    __test__ = False  # keep pytest from collecting this model

    model_config = ConfigDict(extra="allow", frozen=True)

    kind: Literal["test"] = "test"
    path: str
    test_file_path: str = ""
    existing_test_code: str = ""
    original_code: str = ""
    test_code: str = ""
    amount_of_generated_test_cases: int = 0
    single_test_run_command: str = ""
    model_usage_metrics: ModelUsageMetrics = Field(default_factory=ModelUsageMetrics)


Report = CheckReport | TestReport
