"""File reads for the ``file:read`` channel."""

import asyncio
import logging
import os
from datetime import UTC, datetime

from loopdesk.foundation.errors import ErrorCode, LoopDeskError, file_too_large, from_os_error
from loopdesk.foundation.timestamps import iso_timestamp
from loopdesk.host.models import FileReadRequest, FileReadResponse

logger = logging.getLogger(__name__)

DEFAULT_MAX_SIZE = 5 * 1024 * 1024

MIME_TYPES: dict[str, str] = {
    ".md": "text/markdown",
    ".yaml": "text/yaml",
    ".yml": "text/yaml",
    ".json": "application/json",
    ".ts": "text/typescript",
    ".tsx": "text/typescript",
    ".js": "text/javascript",
    ".vue": "text/vue",
    ".css": "text/css",
    ".html": "text/html",
}


def mime_type_for(path: str) -> str:
    """MIME type by extension, ``text/plain`` for anything unmapped."""
    _, ext = os.path.splitext(path)
    return MIME_TYPES.get(ext.lower(), "text/plain")


def _read(path: str, max_size: int) -> FileReadResponse:
    try:
        st = os.stat(path)
    except OSError as e:
        raise from_os_error(e, path) from e

    if not os.path.isfile(path):
        raise LoopDeskError(code=ErrorCode.FS_NOT_FOUND, context={"path": path})
    if st.st_size > max_size:
        raise file_too_large(path, st.st_size, max_size)

    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as e:
        raise from_os_error(e, path) from e

    return FileReadResponse(
        content=data.decode("utf-8", errors="replace"),
        path=path,
        size=st.st_size,
        mime_type=mime_type_for(path),
        last_modified=iso_timestamp(datetime.fromtimestamp(st.st_mtime, UTC)),
    )


async def read_file(request: FileReadRequest, default_max_size: int = DEFAULT_MAX_SIZE) -> FileReadResponse:
    """Read a text file, refusing anything larger than the request's limit.

    Raises:
        LoopDeskError: FS_NOT_FOUND, FS_PERMISSION, FS_TOO_LARGE or FS_READ_FAILED.
    """
    max_size = request.max_size or default_max_size
    response = await asyncio.to_thread(_read, request.path, max_size)
    logger.debug("Read %s (%d bytes)", request.path, response.size)
    return response
