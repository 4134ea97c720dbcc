"""Foundation - errors and logging shared by the host, server and client."""

from loopdesk.foundation.errors import ErrorCode, LoopDeskError, from_os_error

__all__ = [
    "ErrorCode",
    "LoopDeskError",
    "from_os_error",
]
