"""Per-channel fixed-window rate limiting.

Each channel name gets its own independent window. A window opens on the
first check (or the first check after the previous window expired) and
admits up to ``max_requests`` calls; rejected calls never consume quota.

Thread Safety:
    Each channel entry carries its own lock, so contention on one channel
    never blocks another. The registry lock only guards lazy entry creation.
"""

import logging
import math
import threading
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from loopdesk.foundation.errors import rate_limited

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
"""Returns the current time in milliseconds."""

Next = Callable[[Any], Awaitable[Any]]


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


@dataclass(frozen=True, slots=True)
class RateLimitPolicy:
    """Admission policy for one channel."""

    window_ms: int
    max_requests: int


DEFAULT_POLICY = RateLimitPolicy(window_ms=1000, max_requests=100)

DEFAULT_POLICIES: dict[str, RateLimitPolicy] = {
    "cli:execute": RateLimitPolicy(window_ms=1000, max_requests=5),
    "cli:cancel": RateLimitPolicy(window_ms=1000, max_requests=10),
    "project:open": RateLimitPolicy(window_ms=1000, max_requests=10),
    "project:state": RateLimitPolicy(window_ms=100, max_requests=50),
    "file:read": RateLimitPolicy(window_ms=1000, max_requests=100),
    "approval:submit": RateLimitPolicy(window_ms=1000, max_requests=5),
    "approval:status": RateLimitPolicy(window_ms=1000, max_requests=20),
}


@dataclass(slots=True)
class RateLimitState:
    """Live window for one channel."""

    window_start: float
    count: int
    window_ms: int
    max_requests: int
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def expired(self, now: float) -> bool:
        return now >= self.window_start + self.window_ms


class RateLimiter:
    """Fixed-window admission control keyed by channel name.

    Example:
        >>> limiter = RateLimiter()
        >>> all(limiter.check("cli:execute") for _ in range(5))
        True
        >>> limiter.check("cli:execute")
        False
    """

    def __init__(
        self,
        policies: Mapping[str, RateLimitPolicy] | None = None,
        *,
        default: RateLimitPolicy = DEFAULT_POLICY,
        clock: Clock = _monotonic_ms,
    ) -> None:
        self._policies: dict[str, RateLimitPolicy] = dict(DEFAULT_POLICIES)
        if policies:
            self._policies.update(policies)
        self._default = default
        self._clock = clock
        self._states: dict[str, RateLimitState] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_overrides(
        cls,
        overrides: Mapping[str, Mapping[str, int]],
        base: Mapping[str, RateLimitPolicy] | None = None,
        **kwargs: Any,
    ) -> "RateLimiter":
        """Build a limiter from config-style ``{channel: {window_ms, max_requests}}``.

        Args:
            overrides: Per-channel fields replacing the base policy.
            base: Policies to start from, usually the channel registry's;
                ``DEFAULT_POLICIES`` when omitted.
        """
        policies: dict[str, RateLimitPolicy] = dict(DEFAULT_POLICIES if base is None else base)
        for channel, raw in overrides.items():
            base_policy = policies.get(channel, DEFAULT_POLICY)
            policies[channel] = RateLimitPolicy(
                window_ms=int(raw.get("window_ms", base_policy.window_ms)),
                max_requests=int(raw.get("max_requests", base_policy.max_requests)),
            )
        return cls(policies, **kwargs)

    def policy_for(self, channel: str) -> RateLimitPolicy:
        return self._policies.get(channel, self._default)

    def _entry(self, channel: str, now: float) -> RateLimitState:
        state = self._states.get(channel)
        if state is not None:
            return state
        with self._lock:
            state = self._states.get(channel)
            if state is None:
                policy = self.policy_for(channel)
                state = RateLimitState(
                    window_start=now,
                    count=0,
                    window_ms=policy.window_ms,
                    max_requests=policy.max_requests,
                )
                self._states[channel] = state
            return state

    def check(self, channel: str) -> bool:
        """Admit or reject one call on ``channel``.

        Returns:
            True if the call is admitted (and counted), False otherwise.
        """
        now = self._clock()
        state = self._entry(channel, now)
        with state.lock:
            if state.expired(now):
                state.window_start = now
                state.count = 0
            if state.count < state.max_requests:
                state.count += 1
                return True
            return False

    def remaining_wait_ms(self, channel: str) -> int:
        """Milliseconds until ``channel`` admits again; 0 when it already would."""
        state = self._states.get(channel)
        if state is None:
            return 0
        now = self._clock()
        with state.lock:
            if state.expired(now):
                return 0
            return max(0, math.ceil(state.window_start + state.window_ms - now))

    def reset(self, channel: str) -> None:
        with self._lock:
            self._states.pop(channel, None)

    def reset_all(self) -> None:
        with self._lock:
            self._states.clear()

    def cleanup_expired(self) -> int:
        """Drop records that have been idle for two full windows.

        Returns:
            Number of records removed.
        """
        now = self._clock()
        with self._lock:
            stale = [
                name
                for name, state in self._states.items()
                if now - state.window_start > state.window_ms * 2
            ]
            for name in stale:
                del self._states[name]
        if stale:
            logger.debug("Dropped %d idle rate-limit records", len(stale))
        return len(stale)

    def snapshot(self) -> dict[str, dict[str, float | int]]:
        """Current windows for diagnostics."""
        with self._lock:
            return {
                name: {
                    "window_start": state.window_start,
                    "count": state.count,
                    "window_ms": state.window_ms,
                    "max_requests": state.max_requests,
                }
                for name, state in self._states.items()
            }

    async def middleware(self, channel: str, payload: Any, next_: Next) -> Any:
        """Dispatcher middleware: reject over-limit calls before anything else runs."""
        if not self.check(channel):
            retry_after_ms = self.remaining_wait_ms(channel)
            logger.warning("Rate limit exceeded on %s (retry in %d ms)", channel, retry_after_ms)
            raise rate_limited(channel, retry_after_ms)
        return await next_(payload)
