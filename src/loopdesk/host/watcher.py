"""Project file watching.

Owns at most one recursive watch per normalized project path. Starting a
watch for a path that is already watched closes the old watch first
(replace-on-restart, no multiplexing).

Each watch is a ``watchfiles.awatch`` iterator driven by its own asyncio
task. A watch that fails is logged and dropped; other paths keep running.
"""

import asyncio
import logging
import os
import threading
from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass, field

from watchfiles import Change, DefaultFilter, awatch

from loopdesk.config import DEFAULT_IGNORE_DIRS
from loopdesk.foundation.errors import watcher_fault
from loopdesk.foundation.timestamps import iso_timestamp
from loopdesk.host.models import ChangeType, FileChangeEvent

logger = logging.getLogger(__name__)

FileChangeSink = Callable[[FileChangeEvent], None]
Opener = Callable[[str, asyncio.Event], AsyncIterator[set[tuple[Change, str]]]]

_CHANGE_TYPES: dict[Change, ChangeType] = {
    Change.added: "add",
    Change.modified: "change",
    Change.deleted: "unlink",
}


def normalize_watch_path(path: str) -> str:
    return os.path.normpath(os.path.abspath(path))


def awatch_opener(
    ignore_dirs: Iterable[str] = DEFAULT_IGNORE_DIRS,
    debounce_ms: int = 100,
) -> Opener:
    """Build the default opener: a recursive awatch honouring ``ignore_dirs``."""
    watch_filter = DefaultFilter(ignore_dirs=tuple(ignore_dirs))

    def open_watch(path: str, stop_event: asyncio.Event) -> AsyncIterator[set[tuple[Change, str]]]:
        return awatch(
            path,
            watch_filter=watch_filter,
            stop_event=stop_event,
            debounce=debounce_ms,
            recursive=True,
        )

    return open_watch


@dataclass(slots=True)
class Watcher:
    """One live watch over a project subtree."""

    path: str
    sink: FileChangeSink
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task[None] | None = None

    @property
    def closed(self) -> bool:
        return self.stop_event.is_set()

    def close(self) -> None:
        """Stop the watch. Safe to call more than once."""
        self.stop_event.set()
        if self.task is not None and not self.task.done():
            self.task.cancel()


class FileWatchManager:
    """Registry of live watchers keyed by normalized absolute path.

    Args:
        opener: Factory for the change iterator; defaults to ``awatch_opener()``.
            Tests inject a fake to drive change batches deterministically.
    """

    def __init__(self, opener: Opener | None = None) -> None:
        self._opener = opener or awatch_opener()
        self._watchers: dict[str, Watcher] = {}
        self._lock = threading.Lock()

    def start_file_watch(self, path: str, sink: FileChangeSink) -> Watcher:
        """Watch ``path`` recursively, replacing any existing watch on it.

        Must be called from a running event loop.
        """
        key = normalize_watch_path(path)
        loop = asyncio.get_running_loop()

        watcher = Watcher(path=key, sink=sink)
        with self._lock:
            previous = self._watchers.pop(key, None)
            self._watchers[key] = watcher
        if previous is not None:
            logger.debug("Replacing watcher on %s", key)
            previous.close()

        watcher.task = loop.create_task(self._run(watcher), name=f"watch:{key}")
        logger.info("Watching %s", key)
        return watcher

    def stop_file_watch(self, path: str) -> bool:
        """Close and remove the watcher for ``path``. Returns False if none existed."""
        key = normalize_watch_path(path)
        with self._lock:
            watcher = self._watchers.pop(key, None)
        if watcher is None:
            return False
        watcher.close()
        logger.info("Stopped watching %s", key)
        return True

    def stop_all_file_watches(self) -> int:
        """Close every watcher. Returns how many were closed."""
        with self._lock:
            watchers = list(self._watchers.values())
            self._watchers.clear()
        for watcher in watchers:
            watcher.close()
        return len(watchers)

    def get_active_watcher_count(self) -> int:
        return len(self._watchers)

    def is_watching(self, path: str) -> bool:
        return normalize_watch_path(path) in self._watchers

    def watched_paths(self) -> list[str]:
        with self._lock:
            return sorted(self._watchers)

    def _discard(self, watcher: Watcher) -> None:
        with self._lock:
            if self._watchers.get(watcher.path) is watcher:
                del self._watchers[watcher.path]
        watcher.stop_event.set()

    async def _run(self, watcher: Watcher) -> None:
        try:
            async for changes in self._opener(watcher.path, watcher.stop_event):
                for change, changed_path in sorted(changes, key=lambda c: c[1]):
                    change_type = _CHANGE_TYPES.get(change)
                    if change_type is None:
                        continue
                    event = FileChangeEvent(
                        path=changed_path,
                        change_type=change_type,
                        timestamp=iso_timestamp(),
                    )
                    try:
                        watcher.sink(event)
                    except Exception:
                        logger.exception("File change sink failed for %s", changed_path)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("%s", watcher_fault(watcher.path, e))
            self._discard(watcher)
            return

        if not watcher.closed:
            logger.debug("Watch on %s ended", watcher.path)
            self._discard(watcher)
