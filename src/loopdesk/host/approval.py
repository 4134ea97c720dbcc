"""Step approvals for the ``approval:*`` channels.

Approvals are recorded in two places:
- the feature's ``PHASE_GATE_STATUS.yaml`` (current status per step)
- ``.claude/state/approval_log.jsonl`` in the project (append-only audit log)
"""

import asyncio
import json
import logging
import os
import socket
import subprocess
from pathlib import Path
from typing import Any

import yaml

from loopdesk import __version__
from loopdesk.foundation.errors import ErrorCode, LoopDeskError
from loopdesk.foundation.timestamps import iso_timestamp
from loopdesk.host.models import (
    ApprovalStatusRequest,
    ApprovalStatusResponse,
    ApprovalSubmitRequest,
    ApprovalSubmitResponse,
    GateStatus,
    StepStatus,
)
from loopdesk.host.project import ProjectService

logger = logging.getLogger(__name__)

GATE_STATUS_FILE = "PHASE_GATE_STATUS.yaml"
APPROVAL_LOG = Path(".claude") / "state" / "approval_log.jsonl"

# Step id prefix (e.g. CODE-003) -> phase key
PHASE_BY_PREFIX: dict[str, str] = {
    "KICK": "phase_1",
    "SPEC": "phase_2",
    "DEMO": "phase_3",
    "DSGN": "phase_4",
    "CODE": "phase_5",
    "TEST": "phase_6",
    "DEPL": "phase_7",
}


def phase_for_step(step_id: str) -> str:
    prefix = step_id.split("-", 1)[0].upper()
    return PHASE_BY_PREFIX.get(prefix, "phase_1")


def current_identity() -> str:
    """Who is approving: git user.email, then $USER_EMAIL, then the login name."""
    try:
        result = subprocess.run(
            ["git", "config", "user.email"],
            capture_output=True,
            text=True,
            timeout=5,
            check=False,
        )
        email = result.stdout.strip()
        if result.returncode == 0 and email:
            return email
    except (OSError, subprocess.SubprocessError):
        pass

    if email := os.environ.get("USER_EMAIL"):
        return email
    return os.environ.get("USER") or os.environ.get("USERNAME") or "unknown"


def _load_gate_status(path: Path) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            parsed = yaml.safe_load(f)
    except FileNotFoundError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _record_step(
    gate_path: Path,
    step_id: str,
    new_status: str,
    approved_by: str,
    approved_at: str,
) -> None:
    content = _load_gate_status(gate_path)
    phases = content.setdefault("phases", {})
    phase = phases.setdefault(phase_for_step(step_id), {})
    steps = phase.setdefault("steps", {})
    steps[step_id] = {
        "status": new_status,
        "approved_by": approved_by,
        "approved_at": approved_at,
        "source": "gui",
    }
    content["last_updated"] = approved_at

    gate_path.parent.mkdir(parents=True, exist_ok=True)
    with open(gate_path, "w", encoding="utf-8") as f:
        yaml.safe_dump(content, f, sort_keys=False, allow_unicode=True)


def _append_log(project_path: Path, entry: dict[str, Any]) -> None:
    log_path = project_path / APPROVAL_LOG
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with open(log_path, "a", encoding="utf-8") as f:
        f.write(json.dumps(entry, ensure_ascii=False) + "\n")


def _parse_status(content: dict[str, Any]) -> ApprovalStatusResponse:
    gates: list[GateStatus] = []
    steps: list[StepStatus] = []

    phases = content.get("phases")
    if not isinstance(phases, dict):
        return ApprovalStatusResponse()

    for phase_key, data in phases.items():
        if not isinstance(data, dict):
            continue
        try:
            phase_num = int(str(phase_key).replace("phase_", ""))
        except ValueError:
            logger.debug("Skipping unrecognized phase key %r", phase_key)
            continue

        gates.append(
            GateStatus(
                phase=phase_num,
                status="passed" if data.get("gate_passed") else "pending",
                approved_by=data.get("approved_by"),
                approved_at=_as_str(data.get("approved_at")),
                source=data.get("source"),
            )
        )
        for step_id, step in (data.get("steps") or {}).items():
            if not isinstance(step, dict):
                continue
            steps.append(
                StepStatus(
                    step_id=str(step_id),
                    status=str(step.get("status", "pending")),
                    approved_by=step.get("approved_by"),
                    approved_at=_as_str(step.get("approved_at")),
                )
            )

    return ApprovalStatusResponse(gates=gates, steps=steps)


def _as_str(value: Any) -> str | None:
    # YAML turns unquoted ISO timestamps into datetimes
    return None if value is None else str(value)


class ApprovalService:
    """Record and report step approvals for features of the open project."""

    def __init__(self, projects: ProjectService) -> None:
        self._projects = projects

    async def submit(self, request: ApprovalSubmitRequest) -> ApprovalSubmitResponse:
        project = self._projects.require_current()
        feature = self._projects.find_feature(request.feature_id)

        approved_by = await asyncio.to_thread(current_identity)
        approved_at = iso_timestamp()
        new_status = "approved" if request.action == "approve" else "rejected"

        entry: dict[str, Any] = {
            "step_id": request.step_id,
            "approved_by": approved_by,
            "approved_at": approved_at,
            "source": "gui",
            "action": request.action,
            "client_info": {"app_version": __version__, "hostname": socket.gethostname()},
        }
        if request.note is not None:
            entry["note"] = request.note

        gate_path = Path(feature.path) / GATE_STATUS_FILE
        try:
            await asyncio.to_thread(
                _record_step, gate_path, request.step_id, new_status, approved_by, approved_at
            )
            await asyncio.to_thread(_append_log, Path(project.path), entry)
        except (OSError, yaml.YAMLError) as e:
            raise LoopDeskError(
                code=ErrorCode.FS_WRITE_FAILED,
                context={"path": str(gate_path), "detail": str(e)},
                cause=e,
            ) from e

        logger.info("Step %s %s by %s", request.step_id, new_status, approved_by)
        return ApprovalSubmitResponse(
            success=True,
            step_id=request.step_id,
            new_status=new_status,
            approved_by=approved_by,
            approved_at=approved_at,
        )

    async def status(self, request: ApprovalStatusRequest) -> ApprovalStatusResponse:
        feature = self._projects.find_feature(request.feature_id)
        gate_path = Path(feature.path) / GATE_STATUS_FILE
        try:
            content = await asyncio.to_thread(_load_gate_status, gate_path)
        except (OSError, yaml.YAMLError) as e:
            raise LoopDeskError(
                code=ErrorCode.FS_READ_FAILED,
                context={"path": str(gate_path), "detail": str(e)},
                cause=e,
            ) from e
        return _parse_status(content)
