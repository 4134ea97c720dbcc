"""Channel identifiers and the fixed channel registry.

Channels are a closed set: request/response channels are invoked by the UI,
push channels carry host-initiated events. Anything else is rejected at
registration time.
"""

from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from loopdesk.host.rate_limiter import DEFAULT_POLICY, RateLimitPolicy

# ═══════════════════════════════════════════════════════════════
# CHANNEL NAMES
# ═══════════════════════════════════════════════════════════════

PROJECT_OPEN = "project:open"
PROJECT_STATE = "project:state"
FILE_READ = "file:read"
CLI_EXECUTE = "cli:execute"
CLI_CANCEL = "cli:cancel"
APPROVAL_SUBMIT = "approval:submit"
APPROVAL_STATUS = "approval:status"

FILE_CHANGE = "file:change"
CLI_OUTPUT = "cli:output"
CLI_COMPLETE = "cli:complete"

INVOKE_CHANNELS: frozenset[str] = frozenset({
    PROJECT_OPEN,
    PROJECT_STATE,
    FILE_READ,
    CLI_EXECUTE,
    CLI_CANCEL,
    APPROVAL_SUBMIT,
    APPROVAL_STATUS,
})
"""Request/response channels the UI may invoke."""

PUSH_CHANNELS: frozenset[str] = frozenset({
    FILE_CHANGE,
    CLI_OUTPUT,
    CLI_COMPLETE,
})
"""Host-to-UI event channels."""

ALLOWED_CHANNELS: frozenset[str] = INVOKE_CHANNELS | PUSH_CHANNELS
"""Everything a client bridge is allowed to touch."""


# ═══════════════════════════════════════════════════════════════
# REGISTRY
# ═══════════════════════════════════════════════════════════════

Handler = Callable[[Any], Awaitable[BaseModel]]


@dataclass(frozen=True, slots=True)
class ChannelSpec:
    """A channel bound to its request shape, response shape, handler and admission policy."""

    name: str
    request: type[BaseModel]
    response: type[BaseModel]
    handler: Handler
    policy: RateLimitPolicy = DEFAULT_POLICY


class ChannelRegistry:
    """Fixed registry of invokable channels.

    Registering a name outside ``INVOKE_CHANNELS`` or registering the same
    name twice raises ValueError.
    """

    def __init__(self) -> None:
        self._specs: dict[str, ChannelSpec] = {}

    def register(self, spec: ChannelSpec) -> None:
        if spec.name not in INVOKE_CHANNELS:
            raise ValueError(f"Channel is not part of the registry: {spec.name}")
        if spec.name in self._specs:
            raise ValueError(f"Channel already registered: {spec.name}")
        self._specs[spec.name] = spec

    def get(self, name: str) -> ChannelSpec | None:
        return self._specs.get(name)

    def names(self) -> list[str]:
        return sorted(self._specs)

    def policies(self) -> dict[str, RateLimitPolicy]:
        """Rate-limit policy per registered channel."""
        return {name: spec.policy for name, spec in self._specs.items()}

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def __iter__(self) -> Iterator[ChannelSpec]:
        return iter(self._specs.values())

    def __len__(self) -> int:
        return len(self._specs)
