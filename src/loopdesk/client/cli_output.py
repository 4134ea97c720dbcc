"""CLI-output subscription: per-execution output buffer with a completion callback."""

import logging
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from loopdesk.client.bridge import Bridge, Subscription
from loopdesk.host.channels import CLI_COMPLETE, CLI_OUTPUT
from loopdesk.host.models import CliCompleteEvent, CliOutputEvent

logger = logging.getLogger(__name__)


class CliOutputSubscription:
    """Buffer ``cli:output`` events, optionally for a single execution.

    Args:
        bridge: Bridge to the host.
        execution_id: Only keep events of this execution.
        on_output: Called for every kept output event.
        on_complete: Called with ``(execution_id, exit_code)`` from ``cli:complete``.
    """

    def __init__(
        self,
        bridge: Bridge,
        *,
        execution_id: str | None = None,
        on_output: Callable[[CliOutputEvent], None] | None = None,
        on_complete: Callable[[str, int | None], None] | None = None,
    ) -> None:
        self._execution_id = execution_id
        self._on_output = on_output
        self._on_complete = on_complete
        self.output_buffer: list[CliOutputEvent] = []
        self._subscription = Subscription(
            bridge,
            {CLI_OUTPUT: self._handle_output, CLI_COMPLETE: self._handle_complete},
        )

    @property
    def is_subscribed(self) -> bool:
        return self._subscription.active

    @property
    def execution_id(self) -> str | None:
        return self._execution_id

    @execution_id.setter
    def execution_id(self, value: str | None) -> None:
        """Switch the filter and drop buffered output of other executions."""
        self._execution_id = value
        if value is not None:
            self.output_buffer = [e for e in self.output_buffer if e.execution_id == value]

    def subscribe(self) -> None:
        self._subscription.subscribe()

    def unsubscribe(self) -> None:
        self._subscription.unsubscribe()

    def clear_buffer(self) -> None:
        self.output_buffer = []

    def get_output_for_execution(self, execution_id: str) -> list[CliOutputEvent]:
        return [e for e in self.output_buffer if e.execution_id == execution_id]

    def _wanted(self, execution_id: str) -> bool:
        return self._execution_id is None or execution_id == self._execution_id

    def _handle_output(self, payload: dict[str, Any]) -> None:
        try:
            event = CliOutputEvent.model_validate(payload)
        except ValidationError as e:
            logger.warning("Ignoring malformed cli:output event: %s", e)
            return
        if not self._wanted(event.execution_id):
            return
        self.output_buffer.append(event)
        if self._on_output is not None:
            self._on_output(event)

    def _handle_complete(self, payload: dict[str, Any]) -> None:
        try:
            event = CliCompleteEvent.model_validate(payload)
        except ValidationError as e:
            logger.warning("Ignoring malformed cli:complete event: %s", e)
            return
        if self._wanted(event.execution_id) and self._on_complete is not None:
            self._on_complete(event.execution_id, event.exit_code)
