"""Host application: owns the registries and wires the fixed channel set.

Usage:
    host = HostApp(load_config())
    await host.start()
    response = await host.invoke("cli:execute", {...})
    await host.teardown()
"""

import asyncio
import logging
from typing import Any

from loopdesk.config import LoopDeskConfig
from loopdesk.foundation.timestamps import iso_timestamp
from loopdesk.host import channels
from loopdesk.host.approval import ApprovalService
from loopdesk.host.channels import ChannelRegistry, ChannelSpec
from loopdesk.host.dispatcher import ChannelDispatcher
from loopdesk.host.events import EventBus
from loopdesk.host.executions import ExecutionEngine
from loopdesk.host.files import read_file
from loopdesk.host.models import (
    ApprovalStatusRequest,
    ApprovalStatusResponse,
    ApprovalSubmitRequest,
    ApprovalSubmitResponse,
    CliCancelRequest,
    CliCancelResponse,
    CliExecuteRequest,
    CliExecuteResponse,
    FileChangeEvent,
    FileReadRequest,
    FileReadResponse,
    ProjectOpenRequest,
    ProjectSnapshot,
    ProjectStateRequest,
)
from loopdesk.host.paths import PathValidator
from loopdesk.host.project import ProjectService
from loopdesk.host.rate_limiter import DEFAULT_POLICIES, Clock, RateLimiter
from loopdesk.host.watcher import FileWatchManager, Opener, awatch_opener

logger = logging.getLogger(__name__)


class HostApp:
    """The privileged side of the bridge.

    Args:
        config: Settings; defaults to built-in values (core components never
            read global config).
        opener: Override for the file watch opener (tests).
        clock: Override for the rate limiter clock in milliseconds (tests).
    """

    def __init__(
        self,
        config: LoopDeskConfig | None = None,
        *,
        opener: Opener | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config or LoopDeskConfig()

        limiter_kwargs: dict[str, Any] = {"clock": clock} if clock is not None else {}
        self.bus = EventBus()
        self.path_validator = PathValidator(self.config.files.allowed_base_paths)
        self.watchers = FileWatchManager(
            opener or awatch_opener(self.config.watch.ignore_dirs, self.config.watch.debounce_ms)
        )
        self.engine = ExecutionEngine(
            self.bus,
            executable=self.config.cli.executable,
            kill_grace_seconds=self.config.cli.kill_grace_seconds,
            max_history=self.config.cli.max_history,
        )
        self.projects = ProjectService(on_open=self._watch_project)
        self.approvals = ApprovalService(self.projects)

        self.registry = ChannelRegistry()
        self._register_channels()
        self.rate_limiter = RateLimiter.from_overrides(
            self.config.rate_limits.policies, self.registry.policies(), **limiter_kwargs
        )
        self.dispatcher = ChannelDispatcher(
            self.registry,
            middlewares=[self.rate_limiter.middleware, self.path_validator.middleware],
        )
        self._cleanup_task: asyncio.Task[None] | None = None

    # ═══════════════════════════════════════════════════════════════
    # LIFECYCLE
    # ═══════════════════════════════════════════════════════════════

    async def start(self) -> None:
        """Start background housekeeping (idle rate-limit cleanup)."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop(), name="rate-limit-cleanup")
        logger.info("Host started with %d channels", len(self.registry))

    async def teardown(self) -> None:
        """Kill child processes, stop every watch and clear rate-limit state."""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        await self.engine.shutdown()
        stopped = self.watchers.stop_all_file_watches()
        self.rate_limiter.reset_all()
        self.projects.close()
        logger.info("Host torn down (%d watchers stopped)", stopped)

    async def invoke(self, channel: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """Dispatch one request on ``channel``."""
        return await self.dispatcher.dispatch(channel, payload)

    def health(self) -> dict[str, Any]:
        return {
            "status": "healthy",
            "watchers": self.watchers.get_active_watcher_count(),
            "activeExecutions": len(self.engine.active_ids()),
            "sinks": self.bus.sink_count,
            "project": self.projects.current.path if self.projects.current else None,
        }

    async def _cleanup_loop(self) -> None:
        interval = self.config.rate_limits.cleanup_interval_seconds
        while True:
            await asyncio.sleep(interval)
            self.rate_limiter.cleanup_expired()

    # ═══════════════════════════════════════════════════════════════
    # CHANNEL HANDLERS
    # ═══════════════════════════════════════════════════════════════

    def _register_channels(self) -> None:
        handlers = [
            (channels.PROJECT_OPEN, ProjectOpenRequest, ProjectSnapshot, self.projects.open),
            (channels.PROJECT_STATE, ProjectStateRequest, ProjectSnapshot, self.projects.state),
            (channels.FILE_READ, FileReadRequest, FileReadResponse, self._file_read),
            (channels.CLI_EXECUTE, CliExecuteRequest, CliExecuteResponse, self._cli_execute),
            (channels.CLI_CANCEL, CliCancelRequest, CliCancelResponse, self._cli_cancel),
            (channels.APPROVAL_SUBMIT, ApprovalSubmitRequest, ApprovalSubmitResponse, self.approvals.submit),
            (channels.APPROVAL_STATUS, ApprovalStatusRequest, ApprovalStatusResponse, self.approvals.status),
        ]
        for name, request, response, handler in handlers:
            self.registry.register(ChannelSpec(name, request, response, handler, DEFAULT_POLICIES[name]))

    async def _file_read(self, request: FileReadRequest) -> FileReadResponse:
        return await read_file(request, self.config.files.default_max_size)

    async def _cli_execute(self, request: CliExecuteRequest) -> CliExecuteResponse:
        execution = await self.engine.execute(request)
        return CliExecuteResponse(
            execution_id=execution.id,
            status=execution.status,
            started_at=iso_timestamp(execution.started_at),
        )

    async def _cli_cancel(self, request: CliCancelRequest) -> CliCancelResponse:
        success = self.engine.cancel(request.execution_id)
        return CliCancelResponse(success=success, execution_id=request.execution_id)

    def _watch_project(self, path: str) -> None:
        self.watchers.start_file_watch(path, self._publish_file_change)

    def _publish_file_change(self, event: FileChangeEvent) -> None:
        self.bus.publish(channels.FILE_CHANGE, event.model_dump(by_alias=True))
