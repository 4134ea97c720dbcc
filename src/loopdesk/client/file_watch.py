"""File-change subscription: bounded history of ``file:change`` events."""

import logging
from collections import deque
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from loopdesk.client.bridge import Bridge, Subscription
from loopdesk.host.channels import FILE_CHANGE
from loopdesk.host.models import FileChangeEvent

logger = logging.getLogger(__name__)

MAX_EVENTS = 100


class FileWatchSubscription:
    """Mirror file-change notifications.

    Args:
        bridge: Bridge to the host.
        path_filter: Only events whose path passes this predicate are kept.
        on_change: Called for every kept event.
        max_events: Bound on ``recent_changes`` (oldest dropped first).
    """

    def __init__(
        self,
        bridge: Bridge,
        *,
        path_filter: Callable[[str], bool] | None = None,
        on_change: Callable[[FileChangeEvent], None] | None = None,
        max_events: int = MAX_EVENTS,
    ) -> None:
        self._path_filter = path_filter
        self._on_change = on_change
        self._changes: deque[FileChangeEvent] = deque(maxlen=max_events)
        self._subscription = Subscription(bridge, {FILE_CHANGE: self._handle_change})

    @property
    def is_subscribed(self) -> bool:
        return self._subscription.active

    @property
    def recent_changes(self) -> list[FileChangeEvent]:
        return list(self._changes)

    def subscribe(self) -> None:
        self._subscription.subscribe()

    def unsubscribe(self) -> None:
        self._subscription.unsubscribe()

    def clear_changes(self) -> None:
        self._changes.clear()

    def has_changed(self, path: str) -> bool:
        return any(event.path == path for event in self._changes)

    def get_latest_change(self, path: str) -> FileChangeEvent | None:
        for event in reversed(self._changes):
            if event.path == path:
                return event
        return None

    def _handle_change(self, payload: dict[str, Any]) -> None:
        try:
            event = FileChangeEvent.model_validate(payload)
        except ValidationError as e:
            logger.warning("Ignoring malformed file:change event: %s", e)
            return
        if self._path_filter is not None and not self._path_filter(event.path):
            return
        self._changes.append(event)
        if self._on_change is not None:
            self._on_change(event)
