"""Path validation middleware.

Guards every request field that names a filesystem location:
- ``projectPath`` must be absolute and free of dangerous patterns
- ``path`` is resolved against ``projectPath`` when both are present and
  must stay inside it; on its own it must be absolute
- an optional allow-list restricts everything to configured base directories

Validated fields are replaced by their normalized absolute form before the
request reaches schema validation and the handler.
"""

import logging
import os
import re
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from loopdesk.foundation.errors import ErrorCode, LoopDeskError

logger = logging.getLogger(__name__)

Next = Callable[[Any], Awaitable[Any]]

_PROJECT_PATH_KEYS = ("projectPath", "project_path")

_DANGEROUS_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\.\."), "parent directory reference"),
    (re.compile(r"^/etc/"), "system configuration"),
    (re.compile(r"^/usr/"), "system programs"),
    (re.compile(r"^/bin/"), "system binaries"),
    (re.compile(r"^/sbin/"), "system binaries"),
    (re.compile(r"^/var/log/"), "system logs"),
    (re.compile(r"^~/"), "home directory reference"),
    (re.compile(r"\x00"), "NUL byte"),
)


def _traversal(path: str, detail: str) -> LoopDeskError:
    return LoopDeskError(
        code=ErrorCode.PATH_TRAVERSAL,
        context={"path": path, "detail": detail},
    )


def _is_within(path: str, base: str) -> bool:
    try:
        return os.path.commonpath([path, base]) == base
    except ValueError:
        # Different drives on Windows
        return False


class PathValidator:
    """Validate and normalize path-bearing request fields.

    Args:
        allowed_base_paths: When non-empty, every validated path must live
            under one of these directories.
    """

    def __init__(self, allowed_base_paths: Iterable[str] = ()) -> None:
        self._allowed = [os.path.normpath(os.path.abspath(p)) for p in allowed_base_paths]

    @property
    def allowed_base_paths(self) -> list[str]:
        return list(self._allowed)

    def add_allowed_base_path(self, path: str) -> None:
        self._allowed.append(os.path.normpath(os.path.abspath(path)))

    def validate(self, target: str, base: str | None = None) -> str:
        """Return the normalized absolute form of ``target``.

        Raises:
            LoopDeskError: PATH_TRAVERSAL for dangerous patterns, escapes from
                ``base`` or the allow-list; VERIFY_PATH for a relative path
                without a base.
        """
        for pattern, detail in _DANGEROUS_PATTERNS:
            if pattern.search(target):
                raise _traversal(target, detail)

        if base is not None:
            base_resolved = os.path.normpath(os.path.abspath(base))
            resolved = os.path.normpath(os.path.join(base_resolved, target))
            if not _is_within(resolved, base_resolved):
                raise _traversal(target, f"escapes {base_resolved}")
        else:
            if not os.path.isabs(target):
                raise LoopDeskError(code=ErrorCode.VERIFY_PATH, context={"path": target})
            resolved = os.path.normpath(target)

        if self._allowed and not any(_is_within(resolved, base) for base in self._allowed):
            raise _traversal(resolved, "outside allowed directories")

        return resolved

    async def middleware(self, channel: str, payload: Any, next_: Next) -> Any:
        """Dispatcher middleware: normalize ``projectPath`` and ``path``.

        Request models accept field names as well as aliases, so both
        ``projectPath`` and ``project_path`` are validated when present.
        """
        if not isinstance(payload, dict):
            return await next_(payload)

        data = dict(payload)
        project_path = None
        for key in _PROJECT_PATH_KEYS:
            value = data.get(key)
            if not isinstance(value, str):
                continue
            data[key] = self.validate(value)
            if project_path is None:
                project_path = data[key]

        path = data.get("path")
        if isinstance(path, str):
            data["path"] = self.validate(path, project_path)

        return await next_(data)
