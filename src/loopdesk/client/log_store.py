"""Execution/log store: the client's mirror of CLI executions.

Holds:
- one ExecutionRecord per execution started through this store
- a bounded FIFO of log entries (MAX_LOGS, oldest dropped first)
- the active execution id driving ``current_logs``

Output arrives on ``cli:output``; the structured ``cli:complete`` event is
authoritative for the final status, exit code and end time.
"""

import logging
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import ValidationError

from loopdesk.client.bridge import Bridge, Subscription
from loopdesk.foundation.errors import LoopDeskError
from loopdesk.foundation.timestamps import iso_timestamp
from loopdesk.host.channels import CLI_CANCEL, CLI_COMPLETE, CLI_EXECUTE, CLI_OUTPUT
from loopdesk.host.models import CliCompleteEvent, CliOutputEvent, ExecutionMode, ExecutionStatus

logger = logging.getLogger(__name__)

MAX_LOGS = 10000

LogType = Literal["stdout", "stderr", "system", "command"]

_IN_FLIGHT: frozenset[str] = frozenset({"queued", "running"})


@dataclass(slots=True)
class LogEntry:
    id: str
    execution_id: str
    type: LogType
    content: str
    timestamp: str


@dataclass(slots=True)
class ExecutionRecord:
    """Local mirror of one host execution."""

    id: str
    command: str
    status: ExecutionStatus
    started_at: str
    project_path: str | None = None
    step_id: str | None = None
    ended_at: str | None = None
    exit_code: int | None = None


class ExecutionLogStore:
    """Mirror execution lifecycle and buffer output lines.

    Args:
        bridge: Bridge to the host.
        max_logs: Bound on the aggregate log collection.
    """

    def __init__(self, bridge: Bridge, max_logs: int = MAX_LOGS) -> None:
        self._bridge = bridge
        self._max_logs = max_logs
        self._logs: deque[LogEntry] = deque(maxlen=max_logs)
        self._executions: dict[str, ExecutionRecord] = {}
        self.active_execution_id: str | None = None
        # Most recent rejection from execute_command or cancel_execution
        self.last_error: LoopDeskError | None = None
        self._subscription = Subscription(
            bridge,
            {CLI_OUTPUT: self._handle_output, CLI_COMPLETE: self._handle_complete},
        )

    # ═══════════════════════════════════════════════════════════════
    # VIEWS
    # ═══════════════════════════════════════════════════════════════

    @property
    def logs(self) -> list[LogEntry]:
        return list(self._logs)

    @property
    def executions(self) -> dict[str, ExecutionRecord]:
        return dict(self._executions)

    @property
    def current_logs(self) -> list[LogEntry]:
        """Logs of the active execution."""
        if self.active_execution_id is None:
            return []
        return [log for log in self._logs if log.execution_id == self.active_execution_id]

    @property
    def current_execution(self) -> ExecutionRecord | None:
        if self.active_execution_id is None:
            return None
        return self._executions.get(self.active_execution_id)

    @property
    def is_executing(self) -> bool:
        """True while any known execution is queued or running."""
        return any(e.status in _IN_FLIGHT for e in self._executions.values())

    @property
    def is_subscribed(self) -> bool:
        return self._subscription.active

    def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        return self._executions.get(execution_id)

    def get_logs_for_step(self, step_id: str) -> list[LogEntry]:
        ids = {e.id for e in self._executions.values() if e.step_id == step_id}
        return [log for log in self._logs if log.execution_id in ids]

    # ═══════════════════════════════════════════════════════════════
    # ACTIONS
    # ═══════════════════════════════════════════════════════════════

    async def execute_command(
        self,
        command: str,
        project_path: str,
        step_id: str | None = None,
        mode: ExecutionMode = "print",
    ) -> str | None:
        """Start ``command`` on the host.

        Returns:
            The execution id, or None if the host rejected the request
            (nothing is recorded in that case).
        """
        payload: dict[str, Any] = {"command": command, "projectPath": project_path, "mode": mode}
        if step_id is not None:
            payload["stepId"] = step_id

        try:
            response = await self._bridge.invoke(CLI_EXECUTE, payload)
        except LoopDeskError as e:
            logger.warning("Execute failed: %s", e)
            self.last_error = e
            return None

        execution_id = response["executionId"]
        self._executions[execution_id] = ExecutionRecord(
            id=execution_id,
            command=command,
            status=response.get("status", "running"),
            started_at=response.get("startedAt") or iso_timestamp(),
            project_path=project_path,
            step_id=step_id,
        )
        self.add_log(execution_id, "command", f"$ {command}")
        self.active_execution_id = execution_id
        return execution_id

    async def cancel_execution(self, execution_id: str) -> bool:
        """Ask the host to cancel ``execution_id``.

        On success the local record is marked cancelled right away; the
        later ``cli:complete`` event overrides it with the final outcome.
        """
        try:
            await self._bridge.invoke(CLI_CANCEL, {"executionId": execution_id})
        except LoopDeskError as e:
            logger.warning("Cancel failed: %s", e)
            self.last_error = e
            return False

        record = self._executions.get(execution_id)
        if record is not None and record.status in _IN_FLIGHT:
            record.status = "cancelled"
            record.ended_at = iso_timestamp()
        return True

    def add_log(
        self,
        execution_id: str,
        log_type: LogType,
        content: str,
        timestamp: str | None = None,
    ) -> LogEntry:
        """Append one entry, dropping the oldest beyond ``max_logs``."""
        entry = LogEntry(
            id=f"log-{uuid.uuid4().hex}",
            execution_id=execution_id,
            type=log_type,
            content=content,
            timestamp=timestamp or iso_timestamp(),
        )
        self._logs.append(entry)
        return entry

    def set_active_execution(self, execution_id: str | None) -> None:
        self.active_execution_id = execution_id

    def clear_logs(self, execution_id: str | None = None) -> None:
        """Drop all logs, or only those of ``execution_id``."""
        if execution_id is None:
            self._logs.clear()
            return
        kept = [log for log in self._logs if log.execution_id != execution_id]
        self._logs = deque(kept, maxlen=self._max_logs)

    def reset(self) -> None:
        """Forget everything and stop listening."""
        self._logs.clear()
        self._executions.clear()
        self.active_execution_id = None
        self.last_error = None
        self.unsubscribe_from_cli_output()

    # ═══════════════════════════════════════════════════════════════
    # EVENT STREAM
    # ═══════════════════════════════════════════════════════════════

    def subscribe_to_cli_output(self) -> None:
        self._subscription.subscribe()

    def unsubscribe_from_cli_output(self) -> None:
        self._subscription.unsubscribe()

    def _handle_output(self, payload: dict[str, Any]) -> None:
        try:
            event = CliOutputEvent.model_validate(payload)
        except ValidationError as e:
            logger.warning("Ignoring malformed cli:output event: %s", e)
            return
        self.add_log(event.execution_id, event.type, event.content, event.timestamp)

    def _handle_complete(self, payload: dict[str, Any]) -> None:
        try:
            event = CliCompleteEvent.model_validate(payload)
        except ValidationError as e:
            logger.warning("Ignoring malformed cli:complete event: %s", e)
            return
        record = self._executions.get(event.execution_id)
        if record is None:
            return
        record.status = event.status
        record.exit_code = event.exit_code
        record.ended_at = event.timestamp
