"""Host side of the bridge: dispatch, rate limiting, watches and child processes."""

from loopdesk.host.app import HostApp
from loopdesk.host.events import EventBus
from loopdesk.host.executions import Execution, ExecutionEngine
from loopdesk.host.rate_limiter import RateLimiter, RateLimitPolicy
from loopdesk.host.watcher import FileWatchManager, Watcher

__all__ = [
    "EventBus",
    "Execution",
    "ExecutionEngine",
    "FileWatchManager",
    "HostApp",
    "RateLimitPolicy",
    "RateLimiter",
    "Watcher",
]
