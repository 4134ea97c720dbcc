"""Tests for the CLI execution engine.

These spawn real ``sh`` children in a temporary directory; no CLI binary is
needed because plain shell lines run unchanged.
"""

import asyncio
import sys
from pathlib import Path

import pytest

from loopdesk.foundation.errors import ErrorCode, LoopDeskError
from loopdesk.host import executions
from loopdesk.host.events import EventBus
from loopdesk.host.executions import Execution, ExecutionEngine, resolve_command
from loopdesk.host.models import CliExecuteRequest

from conftest import EventRecorder

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell semantics")


def _request(command: str, cwd: Path, **kwargs) -> CliExecuteRequest:
    return CliExecuteRequest(command=command, project_path=str(cwd), **kwargs)


class TestResolveCommand:
    """Mapping UI commands onto shell lines."""

    def test_slash_command_is_quoted(self) -> None:
        """Slash commands go to the CLI as a quoted argument."""
        assert resolve_command("/review", "print") == 'claude --print "/review"'

    def test_bare_word_goes_to_cli(self) -> None:
        """A single bare word is passed to the CLI."""
        assert resolve_command("status", "print") == "claude --print status"

    def test_explicit_claude_prefix(self) -> None:
        """``claude <args>`` is rewritten onto the configured executable."""
        assert resolve_command("claude -p hello", "print", "/opt/cc") == "/opt/cc --print -p hello"
        assert resolve_command("claude", "print") == "claude --print"

    def test_interactive_mode_omits_print_flag(self) -> None:
        """full_interactive never adds --print."""
        assert resolve_command("/review", "full_interactive") == 'claude "/review"'
        assert resolve_command("status", "full_interactive") == "claude status"

    def test_shell_lines_run_unchanged(self) -> None:
        """Anything else is a plain shell command."""
        assert resolve_command("npm test", "print") == "npm test"
        assert resolve_command("claudette --version", "print") == "claudette --version"


class TestExecution:
    """The per-execution state machine."""

    def test_terminal_states_never_change(self) -> None:
        """Once terminal, transitions are refused."""
        execution = Execution(id="e1", command="x", project_path="/tmp")

        assert execution.transition("running")
        assert execution.transition("completed")
        assert not execution.transition("failed")
        assert not execution.transition("running")
        assert execution.status == "completed"

    def test_queued_cannot_jump_to_completed(self) -> None:
        """queued only moves to running or failed."""
        execution = Execution(id="e1", command="x", project_path="/tmp")

        assert not execution.transition("completed")
        assert execution.status == "queued"

    def test_to_dict_uses_camel_case(self) -> None:
        """Serialized records use the wire key names."""
        data = Execution(id="e1", command="x", project_path="/tmp", step_id="2.1").to_dict()

        assert data["projectPath"] == "/tmp"
        assert data["stepId"] == "2.1"
        assert data["endedAt"] is None
        assert data["startedAt"].endswith("Z")


class TestExecute:
    """Spawning and streaming output."""

    @pytest.mark.asyncio
    async def test_streams_output_then_system_line_then_complete(
        self, bus: EventBus, recorder: EventRecorder, tmp_path: Path
    ) -> None:
        """stdout arrives first, then the exit line, then cli:complete."""
        engine = ExecutionEngine(bus)

        execution = await engine.execute(_request("echo one; echo two", tmp_path))
        assert execution.status == "running"
        await engine.wait(execution.id)

        events = recorder.for_execution(execution.id)
        stdout = "".join(p["content"] for c, p in events if c == "cli:output" and p["type"] == "stdout")
        assert stdout == "one\ntwo\n"

        assert events[-2][0] == "cli:output"
        assert events[-2][1]["type"] == "system"
        assert events[-2][1]["content"] == "Process exited with code 0"

        channel, complete = events[-1]
        assert channel == "cli:complete"
        assert complete["exitCode"] == 0
        assert complete["status"] == "completed"
        assert complete["durationMs"] >= 0
        assert execution.status == "completed"

    @pytest.mark.asyncio
    async def test_stderr_is_tagged(self, bus: EventBus, recorder: EventRecorder, tmp_path: Path) -> None:
        """Output written to stderr is published with type stderr."""
        engine = ExecutionEngine(bus)

        execution = await engine.execute(_request("echo oops 1>&2", tmp_path))
        await engine.wait(execution.id)

        stderr = [p["content"] for p in recorder.on("cli:output") if p["type"] == "stderr"]
        assert "".join(stderr) == "oops\n"

    @pytest.mark.asyncio
    async def test_runs_in_project_directory(self, bus: EventBus, recorder: EventRecorder, tmp_path: Path) -> None:
        """The child's working directory is the project path."""
        engine = ExecutionEngine(bus)

        execution = await engine.execute(_request("pwd -P", tmp_path))
        await engine.wait(execution.id)

        stdout = "".join(p["content"] for p in recorder.on("cli:output") if p["type"] == "stdout")
        assert stdout.strip() == str(tmp_path.resolve())

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_failed(self, bus: EventBus, recorder: EventRecorder, tmp_path: Path) -> None:
        """A non-zero exit code ends the execution as failed."""
        engine = ExecutionEngine(bus)

        execution = await engine.execute(_request("exit 3", tmp_path))
        await engine.wait(execution.id)

        assert execution.status == "failed"
        assert execution.exit_code == 3
        complete = recorder.on("cli:complete")[-1]
        assert complete == {
            "executionId": execution.id,
            "exitCode": 3,
            "status": "failed",
            "durationMs": complete["durationMs"],
            "timestamp": complete["timestamp"],
        }

    @pytest.mark.asyncio
    async def test_invalid_utf8_is_replaced(self, bus: EventBus, recorder: EventRecorder, tmp_path: Path) -> None:
        """Undecodable bytes become U+FFFD instead of failing the stream."""
        engine = ExecutionEngine(bus)

        execution = await engine.execute(_request("printf 'a\\377b'", tmp_path))
        await engine.wait(execution.id)

        stdout = "".join(p["content"] for p in recorder.on("cli:output") if p["type"] == "stdout")
        assert stdout == "a\ufffdb"

    @pytest.mark.asyncio
    async def test_spawn_failure_leaves_no_record(
        self, bus: EventBus, recorder: EventRecorder, tmp_path: Path
    ) -> None:
        """A missing working directory raises CLI_SPAWN_FAILED and records nothing."""
        engine = ExecutionEngine(bus)

        with pytest.raises(LoopDeskError) as exc_info:
            await engine.execute(_request("echo hi", tmp_path / "missing"))

        assert exc_info.value.code == ErrorCode.CLI_SPAWN_FAILED
        assert engine.list_executions() == []
        assert recorder.events == []

    @pytest.mark.asyncio
    async def test_nul_byte_in_command_is_spawn_failure(
        self, bus: EventBus, recorder: EventRecorder, tmp_path: Path
    ) -> None:
        """A command the OS cannot accept raises CLI_SPAWN_FAILED, not an internal error."""
        engine = ExecutionEngine(bus)

        with pytest.raises(LoopDeskError) as exc_info:
            await engine.execute(_request("echo a\x00b", tmp_path))

        assert exc_info.value.code == ErrorCode.CLI_SPAWN_FAILED
        assert engine.list_executions() == []
        assert recorder.events == []

    @pytest.mark.asyncio
    async def test_history_is_bounded(self, bus: EventBus, tmp_path: Path) -> None:
        """Only max_history finished executions are kept."""
        engine = ExecutionEngine(bus, max_history=1)

        first = await engine.execute(_request("echo a", tmp_path))
        await engine.wait(first.id)
        second = await engine.execute(_request("echo b", tmp_path))
        await engine.wait(second.id)

        assert engine.get(first.id) is None
        assert engine.get(second.id) is second


class TestCancel:
    """Cancellation through the process group."""

    @pytest.mark.asyncio
    async def test_cancel_ends_as_cancelled(self, bus: EventBus, recorder: EventRecorder, tmp_path: Path) -> None:
        """A cancelled long-running command reports status cancelled."""
        engine = ExecutionEngine(bus, kill_grace_seconds=0.5)
        execution = await engine.execute(_request("sleep 30", tmp_path))
        assert engine.active_ids() == [execution.id]

        assert engine.cancel(execution.id)
        await asyncio.wait_for(engine.wait(execution.id), timeout=10)

        assert execution.status == "cancelled"
        assert execution.cancel_requested
        assert engine.active_ids() == []
        complete = recorder.on("cli:complete")[-1]
        assert complete["status"] == "cancelled"
        assert complete["exitCode"] != 0

    @pytest.mark.asyncio
    async def test_sigterm_ignored_escalates_to_sigkill(self, bus: EventBus, tmp_path: Path) -> None:
        """A child that traps SIGTERM is killed after the grace period."""
        engine = ExecutionEngine(bus, kill_grace_seconds=0.2)
        execution = await engine.execute(_request("trap '' TERM; sleep 30 & wait", tmp_path))
        await asyncio.sleep(0.2)

        engine.cancel(execution.id)
        await asyncio.wait_for(engine.wait(execution.id), timeout=10)

        assert execution.status == "cancelled"
        assert execution.exit_code == -9

    def test_cancel_unknown_id(self, bus: EventBus) -> None:
        """Unknown ids raise CLI_NOT_FOUND."""
        engine = ExecutionEngine(bus)

        with pytest.raises(LoopDeskError) as exc_info:
            engine.cancel("does-not-exist")

        assert exc_info.value.code == ErrorCode.CLI_NOT_FOUND
        assert exc_info.value.context == {"execution_id": "does-not-exist"}

    @pytest.mark.asyncio
    async def test_cancel_finished_execution(self, bus: EventBus, tmp_path: Path) -> None:
        """Cancelling after completion raises CLI_NOT_FOUND and keeps the status."""
        engine = ExecutionEngine(bus)
        execution = await engine.execute(_request("echo done", tmp_path))
        await engine.wait(execution.id)

        with pytest.raises(LoopDeskError) as exc_info:
            engine.cancel(execution.id)

        assert exc_info.value.code == ErrorCode.CLI_NOT_FOUND
        assert execution.status == "completed"

    @pytest.mark.asyncio
    async def test_shutdown_kills_everything(self, bus: EventBus, recorder: EventRecorder, tmp_path: Path) -> None:
        """shutdown leaves no live children and every execution terminal."""
        engine = ExecutionEngine(bus)
        first = await engine.execute(_request("sleep 30", tmp_path))
        second = await engine.execute(_request("sleep 30", tmp_path))

        await asyncio.wait_for(engine.shutdown(), timeout=10)

        assert first.status == "cancelled"
        assert second.status == "cancelled"
        assert len(recorder.on("cli:complete")) == 2

    @pytest.mark.asyncio
    async def test_exit_before_signal_keeps_natural_outcome(
        self, bus: EventBus, recorder: EventRecorder, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """If the child is already gone when SIGTERM is sent, it ends as completed."""
        engine = ExecutionEngine(bus)
        execution = await engine.execute(_request("sleep 0.2", tmp_path))

        def gone(process, sig) -> None:
            raise ProcessLookupError

        monkeypatch.setattr(executions, "_send_signal", gone)

        assert engine.cancel(execution.id)
        await asyncio.wait_for(engine.wait(execution.id), timeout=10)

        assert not execution.cancel_requested
        assert execution.status == "completed"
        assert recorder.on("cli:complete")[-1]["status"] == "completed"
