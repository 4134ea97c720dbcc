"""LoopDesk Error System.

Provides structured error handling with:
- Numeric error codes for programmatic handling
- User-friendly messages
- Recovery hints the UI can render next to the message
- Context for debugging (channel, path, execution id...)
"""

import errno
from enum import IntEnum
from typing import Any


class ErrorCode(IntEnum):
    """Numeric error codes organized by category.

    Format: XYYY where X = category, YYY = specific error

    Categories:
        1xxx - IPC/bridge errors
        2xxx - Validation errors
        3xxx - Filesystem errors
        4xxx - CLI execution errors
        5xxx - Configuration/project errors
        9xxx - Internal errors
    """

    # 1xxx - IPC Errors
    IPC_RATE_LIMITED = 1001
    IPC_CHANNEL_UNKNOWN = 1002
    IPC_CHANNEL_NOT_ALLOWED = 1003
    IPC_SUBSCRIBE_FAILED = 1004

    # 2xxx - Validation Errors
    VERIFY_SCHEMA = 2001
    VERIFY_PATH = 2002
    PATH_TRAVERSAL = 2003

    # 3xxx - Filesystem Errors
    FS_NOT_FOUND = 3001
    FS_PERMISSION = 3002
    FS_TOO_LARGE = 3003
    FS_READ_FAILED = 3004
    FS_WRITE_FAILED = 3005
    FS_WATCH_FAILED = 3006

    # 4xxx - CLI Errors
    CLI_SPAWN_FAILED = 4001
    CLI_NOT_FOUND = 4002
    CLI_CANCEL_FAILED = 4003

    # 5xxx - Configuration Errors
    CFG_MISSING = 5001
    CFG_INVALID = 5002

    # 9xxx - Internal Errors
    INTERNAL_ERROR = 9001

    @property
    def category(self) -> str:
        """Get the error category name."""
        prefix = self.value // 1000
        return {
            1: "ipc",
            2: "validation",
            3: "fs",
            4: "cli",
            5: "config",
            9: "internal",
        }.get(prefix, "unknown")

    @property
    def is_recoverable(self) -> bool:
        """Whether this error type is typically recoverable."""
        non_recoverable = {
            ErrorCode.IPC_CHANNEL_UNKNOWN,
            ErrorCode.IPC_CHANNEL_NOT_ALLOWED,
            ErrorCode.PATH_TRAVERSAL,
            ErrorCode.INTERNAL_ERROR,
        }
        return self not in non_recoverable


# Human-readable error messages
ERROR_MESSAGES: dict[ErrorCode, str] = {
    # IPC errors
    ErrorCode.IPC_RATE_LIMITED: "Rate limit exceeded for channel: {channel}",
    ErrorCode.IPC_CHANNEL_UNKNOWN: "Unknown channel: {channel}",
    ErrorCode.IPC_CHANNEL_NOT_ALLOWED: "Channel '{channel}' is not allowed",
    ErrorCode.IPC_SUBSCRIBE_FAILED: "Cannot subscribe to '{channel}': {detail}",

    # Validation errors
    ErrorCode.VERIFY_SCHEMA: "Validation failed for '{channel}': {detail}",
    ErrorCode.VERIFY_PATH: "Path must be absolute: {path}",
    ErrorCode.PATH_TRAVERSAL: "Path rejected: {path} ({detail})",

    # Filesystem errors
    ErrorCode.FS_NOT_FOUND: "Not found: {path}",
    ErrorCode.FS_PERMISSION: "Permission denied: {path}",
    ErrorCode.FS_TOO_LARGE: "File too large: {size} bytes (max: {max_size})",
    ErrorCode.FS_READ_FAILED: "Failed to read {path}: {detail}",
    ErrorCode.FS_WRITE_FAILED: "Failed to write {path}: {detail}",
    ErrorCode.FS_WATCH_FAILED: "Watch on {path} failed: {detail}",

    # CLI errors
    ErrorCode.CLI_SPAWN_FAILED: "Failed to spawn CLI process for '{command}': {detail}",
    ErrorCode.CLI_NOT_FOUND: "No active process found with ID: {execution_id}",
    ErrorCode.CLI_CANCEL_FAILED: "Failed to cancel process {execution_id}: {detail}",

    # Config errors
    ErrorCode.CFG_MISSING: "{detail}",
    ErrorCode.CFG_INVALID: "Invalid configuration for '{key}': {detail}",

    # Internal
    ErrorCode.INTERNAL_ERROR: "Internal error on '{channel}': {detail}",
}


# Recovery hints shown next to the message
RECOVERY_HINTS: dict[ErrorCode, list[str]] = {
    ErrorCode.IPC_RATE_LIMITED: [
        "Retry after {retry_after_ms} ms",
        "Reduce request frequency on '{channel}'",
    ],
    ErrorCode.IPC_SUBSCRIBE_FAILED: [
        "Close unused subscriptions or event streams",
    ],
    ErrorCode.FS_NOT_FOUND: [
        "Check that the path exists",
        "Re-open the project if it was moved",
    ],
    ErrorCode.FS_PERMISSION: [
        "Check the file permissions",
    ],
    ErrorCode.FS_TOO_LARGE: [
        "Pass a larger maxSize (up to 10 MiB)",
        "Open the file in an external editor",
    ],
    ErrorCode.CLI_SPAWN_FAILED: [
        "Check that the project directory exists",
        "Set cli.executable or CLAUDE_CODE_PATH to a valid executable",
    ],
    ErrorCode.CLI_NOT_FOUND: [
        "The execution may already have finished",
    ],
    ErrorCode.PATH_TRAVERSAL: [
        "Use a path inside the project directory",
    ],
}


class LoopDeskError(Exception):
    """Base error type for all LoopDesk errors.

    Provides structured error information for:
    - Programmatic error handling (code)
    - User-friendly display (message)
    - Actionable follow-ups (recovery_hints)
    - Debugging (context, cause)

    Example:
        >>> err = LoopDeskError(
        ...     code=ErrorCode.IPC_RATE_LIMITED,
        ...     context={"channel": "cli:execute", "retry_after_ms": 420},
        ... )
        >>> print(err)
        [LD-1001] Rate limit exceeded for channel: cli:execute
        >>> print(err.recovery_hints[0])
        Retry after 420 ms
    """

    def __init__(
        self,
        code: ErrorCode,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ):
        self.code = code
        self.context = context or {}
        self.cause = cause
        super().__init__(str(self))

    @property
    def message(self) -> str:
        """Get the formatted user-friendly message."""
        template = ERROR_MESSAGES.get(self.code, "An error occurred: {detail}")
        try:
            return template.format(**self.context)
        except KeyError:
            # Fallback if context doesn't have all keys
            return template

    @property
    def recovery_hints(self) -> list[str]:
        """Get recovery suggestions for this error."""
        hints = RECOVERY_HINTS.get(self.code, [])
        formatted = []
        for hint in hints:
            try:
                formatted.append(hint.format(**self.context))
            except KeyError:
                formatted.append(hint)
        return formatted

    @property
    def is_recoverable(self) -> bool:
        """Whether this error is typically recoverable."""
        return self.code.is_recoverable

    @property
    def category(self) -> str:
        """Get the error category."""
        return self.code.category

    @property
    def error_id(self) -> str:
        """Get the error ID string (e.g., 'LD-1001')."""
        return f"LD-{self.code.value}"

    def __str__(self) -> str:
        return f"[{self.error_id}] {self.message}"

    def __repr__(self) -> str:
        return f"LoopDeskError(code={self.code!r}, context={self.context!r})"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dict for logging/API responses."""
        return {
            "error_id": self.error_id,
            "code": self.code.value,
            "kind": self.code.name,
            "category": self.category,
            "message": self.message,
            "recoverable": self.is_recoverable,
            "recovery_hints": self.recovery_hints,
            "context": self.context,
        }


# Convenience factory functions

def rate_limited(channel: str, retry_after_ms: int) -> LoopDeskError:
    """Create an IPC_RATE_LIMITED error."""
    return LoopDeskError(
        code=ErrorCode.IPC_RATE_LIMITED,
        context={"channel": channel, "retry_after_ms": retry_after_ms},
    )


def file_too_large(path: str, size: int, max_size: int) -> LoopDeskError:
    """Create an FS_TOO_LARGE error."""
    return LoopDeskError(
        code=ErrorCode.FS_TOO_LARGE,
        context={"path": path, "size": size, "max_size": max_size},
    )


def spawn_failed(command: str, cause: Exception) -> LoopDeskError:
    """Create a CLI_SPAWN_FAILED error."""
    return LoopDeskError(
        code=ErrorCode.CLI_SPAWN_FAILED,
        context={"command": command, "detail": str(cause)},
        cause=cause,
    )


def watcher_fault(path: str, cause: Exception) -> LoopDeskError:
    """Create an FS_WATCH_FAILED error."""
    return LoopDeskError(
        code=ErrorCode.FS_WATCH_FAILED,
        context={"path": path, "detail": str(cause) or type(cause).__name__},
        cause=cause,
    )


def config_missing(detail: str) -> LoopDeskError:
    """Create a CFG_MISSING error."""
    return LoopDeskError(code=ErrorCode.CFG_MISSING, context={"detail": detail})


# Error translation from OS exceptions

def from_os_error(
    exc: OSError,
    path: str,
    fallback: ErrorCode = ErrorCode.FS_READ_FAILED,
) -> LoopDeskError:
    """Translate an OSError into the filesystem part of the taxonomy.

    ENOENT/ENOTDIR map to FS_NOT_FOUND, EACCES/EPERM to FS_PERMISSION,
    anything else to ``fallback``.
    """
    if isinstance(exc, (FileNotFoundError, NotADirectoryError)) or exc.errno in (
        errno.ENOENT,
        errno.ENOTDIR,
    ):
        code = ErrorCode.FS_NOT_FOUND
    elif isinstance(exc, PermissionError) or exc.errno in (errno.EACCES, errno.EPERM):
        code = ErrorCode.FS_PERMISSION
    else:
        code = fallback

    return LoopDeskError(
        code=code,
        context={"path": path, "detail": exc.strerror or str(exc)},
        cause=exc,
    )
