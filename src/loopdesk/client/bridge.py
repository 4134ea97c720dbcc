"""Client-side bridge contract and subscription handles.

A Bridge is the only way client code reaches the host:
- ``invoke(channel, payload)`` for request/response channels
- ``listen(channel, listener)`` for pushed events, returning an unsubscribe callable

``LocalBridge`` binds directly to an in-process HostApp and enforces the same
channel allow-list a sandboxed UI would.
"""

import logging
from collections.abc import Callable, Mapping
from typing import Any, Protocol

from loopdesk.foundation.errors import ErrorCode, LoopDeskError
from loopdesk.host.app import HostApp
from loopdesk.host.channels import INVOKE_CHANNELS, PUSH_CHANNELS
from loopdesk.host.events import CallbackSink

logger = logging.getLogger(__name__)

Listener = Callable[[dict[str, Any]], None]
Unsubscribe = Callable[[], None]


class Bridge(Protocol):
    """What client stores need from the host."""

    async def invoke(self, channel: str, payload: dict[str, Any] | None = None) -> dict[str, Any]: ...

    def listen(self, channel: str, listener: Listener) -> Unsubscribe: ...


def _not_allowed(channel: str) -> LoopDeskError:
    return LoopDeskError(code=ErrorCode.IPC_CHANNEL_NOT_ALLOWED, context={"channel": channel})


class LocalBridge:
    """In-process bridge to a HostApp."""

    def __init__(self, host: HostApp) -> None:
        self._host = host

    async def invoke(self, channel: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        if channel not in INVOKE_CHANNELS:
            raise _not_allowed(channel)
        return await self._host.invoke(channel, payload)

    def listen(self, channel: str, listener: Listener) -> Unsubscribe:
        if channel not in PUSH_CHANNELS:
            raise _not_allowed(channel)

        sink = CallbackSink(lambda _channel, payload: listener(payload), {channel})
        if not self._host.bus.attach(sink):
            raise LoopDeskError(
                code=ErrorCode.IPC_SUBSCRIBE_FAILED,
                context={"channel": channel, "detail": "event bus is at capacity"},
            )

        def unsubscribe() -> None:
            self._host.bus.detach(sink)

        return unsubscribe


class Subscription:
    """An explicit, idempotent subscription to one or more push channels.

    Handlers are guarded: an exception in a handler is logged and never
    reaches the bridge, so one bad event cannot end the subscription.
    """

    def __init__(self, bridge: Bridge, handlers: Mapping[str, Listener]) -> None:
        self._bridge = bridge
        self._handlers = dict(handlers)
        self._unsubscribers: list[Unsubscribe] = []

    @property
    def active(self) -> bool:
        return bool(self._unsubscribers)

    def subscribe(self) -> None:
        """Start listening. A no-op when already active.

        All or nothing: if any channel cannot be listened to, the channels
        already registered are released and the error propagates.
        """
        if self.active:
            return
        try:
            for channel, handler in self._handlers.items():
                self._unsubscribers.append(self._bridge.listen(channel, self._guard(channel, handler)))
        except LoopDeskError:
            self.unsubscribe()
            raise

    def unsubscribe(self) -> None:
        """Stop listening. A no-op when not active."""
        unsubscribers, self._unsubscribers = self._unsubscribers, []
        for unsubscribe in unsubscribers:
            unsubscribe()

    @staticmethod
    def _guard(channel: str, handler: Listener) -> Listener:
        def guarded(payload: dict[str, Any]) -> None:
            try:
                handler(payload)
            except Exception:
                logger.exception("Handler for %s failed", channel)

        return guarded
