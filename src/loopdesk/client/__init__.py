"""Client side of the bridge: projections of host state built from pushed events."""

from loopdesk.client.bridge import Bridge, LocalBridge, Subscription
from loopdesk.client.cli_output import CliOutputSubscription
from loopdesk.client.file_watch import FileWatchSubscription
from loopdesk.client.log_store import ExecutionLogStore, ExecutionRecord, LogEntry

__all__ = [
    "Bridge",
    "CliOutputSubscription",
    "ExecutionLogStore",
    "ExecutionRecord",
    "FileWatchSubscription",
    "LocalBridge",
    "LogEntry",
    "Subscription",
]
