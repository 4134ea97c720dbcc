"""Pytest fixtures for LoopDesk tests."""

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from pathlib import Path
from typing import Any

import pytest
from watchfiles import Change

from loopdesk.config import LoopDeskConfig
from loopdesk.host.app import HostApp
from loopdesk.host.events import CallbackSink, EventBus


class FakeClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class FakeWatchOpener:
    """Stand-in for awatch: tests push change batches or failures per path."""

    def __init__(self) -> None:
        self.opened: list[str] = []
        self._queues: dict[str, asyncio.Queue[Any]] = {}

    def _queue(self, path: str) -> asyncio.Queue[Any]:
        return self._queues.setdefault(path, asyncio.Queue())

    def __call__(self, path: str, stop_event: asyncio.Event) -> AsyncIterator[set[tuple[Change, str]]]:
        self.opened.append(path)
        queue = self._queue(path)

        async def changes() -> AsyncIterator[set[tuple[Change, str]]]:
            while not stop_event.is_set():
                item = await queue.get()
                if isinstance(item, BaseException):
                    raise item
                yield item

        return changes()

    def emit(self, path: str, *changes: tuple[Change, str]) -> None:
        self._queue(path).put_nowait(set(changes))

    def fail(self, path: str, exc: BaseException) -> None:
        self._queue(path).put_nowait(exc)


class EventRecorder:
    """Collect every event published on a bus."""

    def __init__(self, bus: EventBus) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []
        bus.attach(CallbackSink(lambda channel, payload: self.events.append((channel, payload))))

    def on(self, channel: str) -> list[dict[str, Any]]:
        return [payload for name, payload in self.events if name == channel]

    def for_execution(self, execution_id: str) -> list[tuple[str, dict[str, Any]]]:
        return [(name, p) for name, p in self.events if p.get("executionId") == execution_id]


class FakeBridge:
    """Scripted Bridge: canned invoke results and hand-fed push events."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any] | None]] = []
        self.responses: dict[str, Any] = {}
        self._listeners: dict[str, list[Callable[[dict[str, Any]], None]]] = {}

    async def invoke(self, channel: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        self.calls.append((channel, payload))
        response = self.responses[channel]
        if isinstance(response, BaseException):
            raise response
        return response

    def listen(self, channel: str, listener: Callable[[dict[str, Any]], None]) -> Callable[[], None]:
        self._listeners.setdefault(channel, []).append(listener)

        def unsubscribe() -> None:
            self._listeners[channel].remove(listener)

        return unsubscribe

    def listener_count(self, channel: str) -> int:
        return len(self._listeners.get(channel, []))

    def push(self, channel: str, payload: dict[str, Any]) -> None:
        for listener in list(self._listeners.get(channel, [])):
            listener(payload)


async def settle(rounds: int = 5) -> None:
    """Let pending callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_opener() -> FakeWatchOpener:
    return FakeWatchOpener()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(bus: EventBus) -> EventRecorder:
    return EventRecorder(bus)


@pytest.fixture
def fake_bridge() -> FakeBridge:
    return FakeBridge()


@pytest.fixture
def settle_loop() -> Callable[..., Any]:
    return settle


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """A minimal project: .claude/ plus two feature folders under docs/."""
    project = tmp_path / "demo-project"
    (project / ".claude" / "config").mkdir(parents=True)
    (project / "docs" / "auth").mkdir(parents=True)
    (project / "docs" / "billing").mkdir(parents=True)
    (project / "README.md").write_text("# Demo\n", encoding="utf-8")
    return project


@pytest.fixture
def make_host(fake_opener: FakeWatchOpener, fake_clock: FakeClock) -> Callable[..., HostApp]:
    """Build a HostApp wired to the fake watch opener and fake clock."""

    def factory(config: LoopDeskConfig | None = None, **kwargs: Any) -> HostApp:
        kwargs.setdefault("opener", fake_opener)
        kwargs.setdefault("clock", fake_clock)
        config = config or LoopDeskConfig()
        config.cli.kill_grace_seconds = 0.5
        return HostApp(config, **kwargs)

    return factory


@pytest.fixture
def running() -> Callable[[HostApp], AbstractAsyncContextManager[HostApp]]:
    """``async with running(host)`` starts the host and always tears it down."""

    @asynccontextmanager
    async def run(host: HostApp) -> AsyncIterator[HostApp]:
        await host.start()
        try:
            yield host
        finally:
            await host.teardown()

    return run
