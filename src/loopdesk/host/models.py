"""Request, response and event models for the bridge channels.

All models inherit from CamelModel which automatically converts snake_case
Python fields to camelCase on the wire and accepts either spelling on input.
Unknown request keys are ignored (pydantic's default ``extra="ignore"``).
"""

from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

MAX_READ_LIMIT = 10 * 1024 * 1024
"""Largest ``maxSize`` a file:read request may ask for (10 MiB)."""

ExecutionStatus = Literal["queued", "running", "completed", "failed", "cancelled"]
ExecutionMode = Literal["print", "full_interactive"]
OutputType = Literal["stdout", "stderr", "system"]
ChangeType = Literal["add", "change", "unlink"]


def _to_camel(string: str) -> str:
    """Convert snake_case to camelCase."""
    parts = string.split("_")
    return parts[0] + "".join(word.capitalize() for word in parts[1:])


class CamelModel(BaseModel):
    """Base model with camelCase JSON serialization."""

    model_config = ConfigDict(
        alias_generator=_to_camel,
        populate_by_name=True,
    )


# ═══════════════════════════════════════════════════════════════
# PROJECT
# ═══════════════════════════════════════════════════════════════


class ProjectOpenRequest(CamelModel):
    path: str = Field(min_length=1, max_length=1000)


class ProjectStateRequest(CamelModel):
    """project:state takes no arguments."""


class FeatureInfo(CamelModel):
    """A feature folder inside the open project."""

    id: str
    name: str
    path: str


class ProjectSnapshot(CamelModel):
    """The currently open project."""

    id: str
    name: str
    path: str
    version: str = "1.0.0"
    auto_save: bool = True
    claude_code_path: str | None = None
    default_model: str | None = None
    features: list[FeatureInfo] = Field(default_factory=list)
    active_feature_id: str | None = None
    opened_at: str


# ═══════════════════════════════════════════════════════════════
# FILES
# ═══════════════════════════════════════════════════════════════


class FileReadRequest(CamelModel):
    path: str = Field(min_length=1, max_length=1000)
    project_path: str | None = Field(default=None, min_length=1, max_length=1000)
    max_size: int | None = Field(default=None, ge=1, le=MAX_READ_LIMIT)


class FileReadResponse(CamelModel):
    content: str
    path: str
    size: int
    mime_type: str
    last_modified: str


class FileChangeEvent(CamelModel):
    """Pushed on file:change."""

    path: str
    change_type: ChangeType
    timestamp: str


# ═══════════════════════════════════════════════════════════════
# CLI
# ═══════════════════════════════════════════════════════════════


class CliExecuteRequest(CamelModel):
    command: str = Field(min_length=1, max_length=10000)
    project_path: str = Field(min_length=1, max_length=1000)
    step_id: str | None = Field(default=None, max_length=100)
    feature_id: str | None = Field(default=None, max_length=100)
    mode: ExecutionMode = "print"


class CliExecuteResponse(CamelModel):
    execution_id: str
    status: ExecutionStatus
    started_at: str


class CliCancelRequest(CamelModel):
    execution_id: str = Field(min_length=1, max_length=100)


class CliCancelResponse(CamelModel):
    success: bool
    execution_id: str


class CliOutputEvent(CamelModel):
    """Pushed on cli:output, one per decoded chunk or system line."""

    execution_id: str
    type: OutputType
    content: str
    timestamp: str


class CliCompleteEvent(CamelModel):
    """Pushed on cli:complete once an execution reaches a terminal state."""

    execution_id: str
    exit_code: int | None
    status: ExecutionStatus
    duration_ms: int
    timestamp: str


# ═══════════════════════════════════════════════════════════════
# APPROVAL
# ═══════════════════════════════════════════════════════════════


class ApprovalSubmitRequest(CamelModel):
    step_id: str = Field(min_length=1, max_length=100)
    feature_id: str = Field(min_length=1, max_length=100)
    action: Literal["approve", "reject"]
    note: str | None = Field(default=None, max_length=1000)


class ApprovalSubmitResponse(CamelModel):
    success: bool
    step_id: str
    new_status: Literal["approved", "rejected"]
    approved_by: str
    approved_at: str


class ApprovalStatusRequest(CamelModel):
    feature_id: str = Field(
        min_length=1,
        max_length=100,
        validation_alias=AliasChoices("featureId", "feature_id", "id"),
    )


class GateStatus(CamelModel):
    phase: int
    status: Literal["passed", "pending"]
    approved_by: str | None = None
    approved_at: str | None = None
    source: str | None = None


class StepStatus(CamelModel):
    step_id: str
    status: str
    approved_by: str | None = None
    approved_at: str | None = None


class ApprovalStatusResponse(CamelModel):
    gates: list[GateStatus] = Field(default_factory=list)
    steps: list[StepStatus] = Field(default_factory=list)
