"""CLI execution engine.

Spawns shell commands in a project directory and supervises them:
- Output streamed as ``cli:output`` events in per-execution order
- A terminal ``system`` line followed by a structured ``cli:complete`` event
- Best-effort cancellation (SIGTERM to the process group, SIGKILL after a grace period)
- Thread-safe registry with bounded history of finished executions

There is no server-side timeout; a command runs until it exits or is cancelled.
"""

import asyncio
import codecs
import logging
import os
import re
import signal
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from loopdesk.foundation.errors import ErrorCode, LoopDeskError, spawn_failed
from loopdesk.foundation.timestamps import iso_timestamp, utc_now
from loopdesk.host.channels import CLI_COMPLETE, CLI_OUTPUT
from loopdesk.host.events import EventBus
from loopdesk.host.models import (
    CliCompleteEvent,
    CliExecuteRequest,
    CliOutputEvent,
    ExecutionMode,
    ExecutionStatus,
    OutputType,
)

logger = logging.getLogger(__name__)

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})

_ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "queued": frozenset({"running", "failed"}),
    "running": TERMINAL_STATUSES,
}

_READ_CHUNK = 4096
_CLAUDE_PREFIX = re.compile(r"^claude(?:\s+|$)")
_POSIX = os.name == "posix"


def resolve_command(command: str, mode: ExecutionMode, executable: str = "claude") -> str:
    """Turn a UI command into the shell line that is actually run.

    - ``/review`` becomes ``<executable> "/review"``
    - a single bare word such as ``status`` becomes ``<executable> status``
    - ``claude <args>`` becomes ``<executable> <args>``
    - in print mode every line aimed at the CLI gets ``--print``
    - anything else is run unchanged as a shell command

    Examples:
        >>> resolve_command("/review", "print")
        'claude --print "/review"'
        >>> resolve_command("echo hi", "print")
        'echo hi'
    """
    if command.startswith("/"):
        args = f'"{command}"'
    elif not command.startswith("claude") and " " not in command:
        args = command
    elif _CLAUDE_PREFIX.match(command):
        args = _CLAUDE_PREFIX.sub("", command, count=1)
    else:
        return command

    flag = "--print " if mode == "print" else ""
    return f"{executable} {flag}{args}".rstrip()


@dataclass
class Execution:
    """State for a single spawned command."""

    id: str
    command: str
    project_path: str
    mode: ExecutionMode = "print"
    step_id: str | None = None
    feature_id: str | None = None
    resolved_command: str = ""

    status: ExecutionStatus = "queued"
    started_at: datetime = field(default_factory=utc_now)
    ended_at: datetime | None = None
    exit_code: int | None = None
    cancel_requested: bool = False

    process: asyncio.subprocess.Process | None = field(default=None, repr=False)
    supervisor: asyncio.Task[None] | None = field(default=None, repr=False)
    kill_handle: asyncio.TimerHandle | None = field(default=None, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def duration_ms(self) -> int:
        end = self.ended_at or utc_now()
        return int((end - self.started_at).total_seconds() * 1000)

    def transition(self, status: ExecutionStatus) -> bool:
        """Move to ``status`` if the state machine allows it.

        Terminal states never change again.
        """
        if status not in _ALLOWED_TRANSITIONS.get(self.status, frozenset()):
            logger.debug("Ignoring %s -> %s for %s", self.status, status, self.id)
            return False
        self.status = status
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "command": self.command,
            "projectPath": self.project_path,
            "stepId": self.step_id,
            "mode": self.mode,
            "status": self.status,
            "startedAt": iso_timestamp(self.started_at),
            "endedAt": iso_timestamp(self.ended_at) if self.ended_at else None,
            "exitCode": self.exit_code,
        }


def _send_signal(process: asyncio.subprocess.Process, sig: int) -> None:
    if _POSIX:
        # start_new_session makes the child its own group leader
        os.killpg(process.pid, sig)
    elif sig == signal.SIGTERM:
        process.terminate()
    else:
        process.kill()


class ExecutionEngine:
    """Spawn and supervise CLI commands.

    Args:
        bus: Event bus receiving ``cli:output`` and ``cli:complete``.
        executable: CLI used for slash commands and bare words.
        kill_grace_seconds: Delay between SIGTERM and SIGKILL on cancel.
        max_history: Finished executions retained for lookup.
    """

    def __init__(
        self,
        bus: EventBus,
        *,
        executable: str = "claude",
        kill_grace_seconds: float = 3.0,
        max_history: int = 200,
    ) -> None:
        self._bus = bus
        self._executable = executable
        self._kill_grace = kill_grace_seconds
        self._max_history = max_history
        self._executions: OrderedDict[str, Execution] = OrderedDict()
        self._lock = threading.Lock()

    @property
    def executable(self) -> str:
        return self._executable

    async def execute(self, request: CliExecuteRequest) -> Execution:
        """Spawn ``request.command`` and return as soon as the child is running.

        Raises:
            LoopDeskError: CLI_SPAWN_FAILED if the child could not be started.
                No execution is recorded in that case.
        """
        execution = Execution(
            id=str(uuid.uuid4()),
            command=request.command,
            project_path=request.project_path,
            mode=request.mode,
            step_id=request.step_id,
            feature_id=request.feature_id,
        )
        execution.resolved_command = resolve_command(request.command, request.mode, self._executable)

        env = {**os.environ, "FORCE_COLOR": "1"}
        try:
            process = await asyncio.create_subprocess_shell(
                execution.resolved_command,
                cwd=request.project_path,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                start_new_session=_POSIX,
            )
        except (OSError, ValueError) as e:
            # ValueError: embedded NUL byte in the command or cwd
            logger.warning("Spawn failed for %r in %s: %s", request.command, request.project_path, e)
            raise spawn_failed(request.command, e) from e

        execution.process = process
        execution.transition("running")
        with self._lock:
            self._executions[execution.id] = execution

        execution.supervisor = asyncio.get_running_loop().create_task(
            self._supervise(execution), name=f"exec:{execution.id}"
        )
        logger.info("Started %s (pid %s): %s", execution.id, process.pid, execution.resolved_command)
        return execution

    def cancel(self, execution_id: str) -> bool:
        """Request termination of a running execution.

        Fire-and-forget: the terminal ``cli:complete`` event reports the outcome.

        Raises:
            LoopDeskError: CLI_NOT_FOUND if the id is unknown or already finished.
        """
        execution = self._executions.get(execution_id)
        process = execution.process if execution else None
        if execution is None or execution.is_terminal or process is None or process.returncode is not None:
            raise LoopDeskError(code=ErrorCode.CLI_NOT_FOUND, context={"execution_id": execution_id})

        execution.cancel_requested = True
        try:
            _send_signal(process, signal.SIGTERM)
        except ProcessLookupError:
            # Exited on its own before the signal; report the natural outcome
            execution.cancel_requested = False
            return True
        except OSError as e:
            raise LoopDeskError(
                code=ErrorCode.CLI_CANCEL_FAILED,
                context={"execution_id": execution_id, "detail": str(e)},
                cause=e,
            ) from e

        if execution.kill_handle is None:
            loop = asyncio.get_running_loop()
            execution.kill_handle = loop.call_later(self._kill_grace, self._force_kill, execution)
        logger.info("Cancel requested for %s", execution_id)
        return True

    def kill_all(self) -> int:
        """SIGKILL every live child. Returns how many were signalled."""
        killed = 0
        for execution in self._live():
            execution.cancel_requested = True
            if self._force_kill(execution):
                killed += 1
        if killed:
            logger.info("Killed %d running executions", killed)
        return killed

    async def shutdown(self) -> None:
        """Kill every live child and wait for the supervisors to finish."""
        self.kill_all()
        supervisors = [e.supervisor for e in self._executions.values() if e.supervisor is not None]
        if supervisors:
            await asyncio.gather(*supervisors, return_exceptions=True)

    def get(self, execution_id: str) -> Execution | None:
        return self._executions.get(execution_id)

    def active_ids(self) -> list[str]:
        return [e.id for e in self._live()]

    def list_executions(self) -> list[Execution]:
        with self._lock:
            return list(self._executions.values())

    async def wait(self, execution_id: str) -> Execution:
        """Wait until ``execution_id`` reaches a terminal state."""
        execution = self._executions.get(execution_id)
        if execution is None:
            raise LoopDeskError(code=ErrorCode.CLI_NOT_FOUND, context={"execution_id": execution_id})
        if execution.supervisor is not None and not execution.supervisor.done():
            await asyncio.shield(execution.supervisor)
        return execution

    def _live(self) -> list[Execution]:
        with self._lock:
            return [e for e in self._executions.values() if not e.is_terminal]

    def _force_kill(self, execution: Execution) -> bool:
        process = execution.process
        if process is None or process.returncode is not None:
            return False
        try:
            _send_signal(process, signal.SIGKILL)
        except ProcessLookupError:
            return False
        logger.debug("Sent SIGKILL to %s", execution.id)
        return True

    def _emit_output(self, execution: Execution, kind: OutputType, content: str) -> None:
        event = CliOutputEvent(
            execution_id=execution.id,
            type=kind,
            content=content,
            timestamp=iso_timestamp(),
        )
        self._bus.publish(CLI_OUTPUT, event.model_dump(by_alias=True))

    async def _pump(self, execution: Execution, stream: asyncio.StreamReader | None, kind: OutputType) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while chunk := await stream.read(_READ_CHUNK):
            text = decoder.decode(chunk)
            if text:
                self._emit_output(execution, kind, text)
        tail = decoder.decode(b"", final=True)
        if tail:
            self._emit_output(execution, kind, tail)

    async def _supervise(self, execution: Execution) -> None:
        process = execution.process
        assert process is not None
        try:
            await asyncio.gather(
                self._pump(execution, process.stdout, "stdout"),
                self._pump(execution, process.stderr, "stderr"),
            )
            exit_code = await process.wait()
        except asyncio.CancelledError:
            self._force_kill(execution)
            raise
        self._finish(execution, exit_code)

    def _finish(self, execution: Execution, exit_code: int) -> None:
        if execution.kill_handle is not None:
            execution.kill_handle.cancel()
            execution.kill_handle = None

        execution.ended_at = utc_now()
        execution.exit_code = exit_code
        if execution.cancel_requested:
            status: ExecutionStatus = "cancelled"
        elif exit_code == 0:
            status = "completed"
        else:
            status = "failed"
        execution.transition(status)
        logger.info("Execution %s %s (exit %s)", execution.id, execution.status, exit_code)

        self._emit_output(execution, "system", f"Process exited with code {exit_code}")
        complete = CliCompleteEvent(
            execution_id=execution.id,
            exit_code=exit_code,
            status=execution.status,
            duration_ms=execution.duration_ms,
            timestamp=iso_timestamp(execution.ended_at),
        )
        self._bus.publish(CLI_COMPLETE, complete.model_dump(by_alias=True))
        self._prune_history()

    def _prune_history(self) -> None:
        """Drop the oldest finished executions beyond ``max_history``."""
        with self._lock:
            finished = [eid for eid, e in self._executions.items() if e.is_terminal]
            for eid in finished[: max(0, len(finished) - self._max_history)]:
                del self._executions[eid]
