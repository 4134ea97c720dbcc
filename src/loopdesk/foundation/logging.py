"""Logging setup for the loopdesk command line.

Library modules only ever call ``logging.getLogger(__name__)``; handlers are
installed once, by the CLI, from the ``logging:`` section of the loaded
configuration:

    logging:
      level: INFO          # LOOPDESK_LOGGING_LEVEL
      persist: true        # LOOPDESK_LOGGING_PERSIST, or --log-file
      directory: .loopdesk/logs
      max_sessions: 10

Console output goes through rich on stderr so it never mixes with command
output streamed on stdout. A persisted session always records DEBUG,
whatever the console level.
"""

import logging
import os
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

from loopdesk.config import LoggingConfig
from loopdesk.foundation.errors import ErrorCode, LoopDeskError

_FILE_FORMAT = "%(asctime)s %(name)s [%(levelname)s] %(message)s"

# Handlers installed by configure_logging, removed again on reconfiguration
_installed: list[logging.Handler] = []


def resolve_level(settings: LoggingConfig, *, debug: bool = False) -> int:
    """Console level: ``--debug`` wins over ``logging.level``.

    Raises:
        LoopDeskError: CFG_INVALID when ``logging.level`` names no level.
    """
    if debug:
        return logging.DEBUG
    level = settings.level
    if isinstance(level, int):
        return level
    numeric = logging.getLevelName(str(level).upper())
    if not isinstance(numeric, int):
        raise LoopDeskError(
            code=ErrorCode.CFG_INVALID,
            context={"key": "logging.level", "detail": f"unknown level {level!r}"},
        )
    return numeric


def open_session_log(settings: LoggingConfig) -> Path:
    """Create a fresh session log file and prune all but the newest ``max_sessions``."""
    directory = Path(settings.directory).expanduser()
    directory.mkdir(parents=True, exist_ok=True)

    stamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
    path = directory / f"session_{stamp}_{os.getpid()}.log"
    path.touch()

    sessions = sorted(directory.glob("session_*.log"), key=lambda p: p.stat().st_mtime, reverse=True)
    for stale in sessions[max(settings.max_sessions, 1):]:
        if stale != path:
            stale.unlink(missing_ok=True)
    return path


def configure_logging(
    settings: LoggingConfig,
    *,
    debug: bool = False,
    console: Console | None = None,
) -> Path | None:
    """Install console (and optionally file) handlers on the root logger.

    Safe to call again; handlers from a previous call are replaced.

    Returns:
        Path of the session log when ``settings.persist`` is set, else None.
    """
    level = resolve_level(settings, debug=debug)

    root = logging.getLogger()
    for handler in _installed:
        root.removeHandler(handler)
        handler.close()
    _installed.clear()

    console_handler = RichHandler(
        console=console or Console(stderr=True),
        level=level,
        show_path=debug,
        rich_tracebacks=True,
    )
    _installed.append(console_handler)

    log_path: Path | None = None
    if settings.persist:
        try:
            log_path = open_session_log(settings)
        except OSError as e:
            console_handler.console.print(f"[yellow]Session log disabled:[/] {e}")
        else:
            file_handler = logging.FileHandler(log_path, encoding="utf-8")
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(_FILE_FORMAT))
            _installed.append(file_handler)

    for handler in _installed:
        root.addHandler(handler)
    root.setLevel(logging.DEBUG if log_path else level)

    for name in settings.quiet:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    logging.getLogger(__name__).debug(
        "Logging at %s, session log %s", logging.getLevelName(level), log_path or "off"
    )
    return log_path
