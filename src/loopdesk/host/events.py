"""Push-only event bus for host-to-UI notifications.

Routes events from the host registries (execution engine, file watchers) to
attached sinks: in-process client bridges and WebSocket connections.

Delivery is synchronous and in publish order, so every sink observes a
single execution's events in the order the engine produced them.
"""

import asyncio
import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Protocol

from loopdesk.host.channels import PUSH_CHANNELS

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BusEvent:
    """One pushed event."""

    channel: str
    payload: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        """Serialize for WebSocket transmission."""
        return {"channel": self.channel, "payload": self.payload}


class EventSink(Protocol):
    """Anything that can receive pushed events."""

    def accepts(self, channel: str) -> bool: ...

    def send(self, event: BusEvent) -> None: ...


class SinkOverflow(Exception):
    """Raised by a sink that can no longer keep up."""


class _FilteredSink:
    def __init__(self, channels: Iterable[str] | None) -> None:
        self.channels = frozenset(channels) if channels is not None else None

    def accepts(self, channel: str) -> bool:
        return self.channels is None or channel in self.channels


class CallbackSink(_FilteredSink):
    """Deliver events to a plain callable ``(channel, payload)``."""

    def __init__(
        self,
        callback: Callable[[str, dict[str, Any]], None],
        channels: Iterable[str] | None = None,
    ) -> None:
        super().__init__(channels)
        self._callback = callback

    def send(self, event: BusEvent) -> None:
        self._callback(event.channel, event.payload)


class QueueSink(_FilteredSink):
    """Buffer events in a bounded asyncio.Queue for a WebSocket writer.

    A full queue means the consumer fell behind; ``send`` then marks the sink
    dropped and raises SinkOverflow so the bus detaches it.
    """

    def __init__(self, channels: Iterable[str] | None = None, maxsize: int = 1000) -> None:
        super().__init__(channels)
        self.queue: asyncio.Queue[BusEvent] = asyncio.Queue(maxsize=maxsize)
        self.dropped = False

    def send(self, event: BusEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull as e:
            self.dropped = True
            raise SinkOverflow(f"{self.queue.maxsize} events pending") from e

    async def get(self) -> BusEvent:
        return await self.queue.get()


class EventBus:
    """Fan pushed events out to attached sinks.

    Features:
    - Channel filtering per sink
    - Connection limits (prevents resource exhaustion)
    - Backpressure handling (overflowing or failing sinks are dropped)

    Usage:
        bus = EventBus()
        sink = QueueSink(channels={"cli:output"})
        bus.attach(sink)
        bus.publish("cli:output", {...})
        bus.detach(sink)
    """

    MAX_SINKS = 100

    def __init__(self) -> None:
        self._sinks: list[EventSink] = []
        self._lock = threading.Lock()

    def attach(self, sink: EventSink) -> bool:
        """Add a sink.

        Returns:
            True if attached, False if at capacity.
        """
        with self._lock:
            if len(self._sinks) >= self.MAX_SINKS:
                logger.warning("Event bus at capacity (%d sinks)", self.MAX_SINKS)
                return False
            if sink not in self._sinks:
                self._sinks.append(sink)
            return True

    def detach(self, sink: EventSink) -> bool:
        """Remove a sink. Returns False if it was not attached."""
        with self._lock:
            try:
                self._sinks.remove(sink)
            except ValueError:
                return False
            return True

    def publish(self, channel: str, payload: dict[str, Any]) -> int:
        """Deliver one event to every sink that accepts ``channel``.

        Returns:
            Number of sinks that received the event.

        Raises:
            ValueError: ``channel`` is not a push channel.
        """
        if channel not in PUSH_CHANNELS:
            raise ValueError(f"Not a push channel: {channel}")

        event = BusEvent(channel=channel, payload=payload)
        with self._lock:
            sinks = list(self._sinks)

        delivered = 0
        dropped: list[EventSink] = []
        for sink in sinks:
            if not sink.accepts(channel):
                continue
            try:
                sink.send(event)
                delivered += 1
            except SinkOverflow as e:
                logger.warning("Dropping slow event consumer on %s: %s", channel, e)
                dropped.append(sink)
            except Exception:
                logger.exception("Event sink failed on %s, detaching", channel)
                dropped.append(sink)

        for sink in dropped:
            self.detach(sink)
        return delivered

    @property
    def sink_count(self) -> int:
        """Number of attached sinks."""
        return len(self._sinks)
