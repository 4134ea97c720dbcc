"""Bridge routes: channel invocation, event stream and health."""

import asyncio
import contextlib
import logging
import math
from typing import Any

from fastapi import APIRouter, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from loopdesk.foundation.errors import ErrorCode, LoopDeskError
from loopdesk.host.app import HostApp
from loopdesk.host.channels import PUSH_CHANNELS
from loopdesk.host.events import QueueSink

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["bridge"])

# Seconds between checks for a dropped (overflowed) event consumer
_DROP_POLL_SECONDS = 1.0

STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.IPC_RATE_LIMITED: 429,
    ErrorCode.IPC_CHANNEL_UNKNOWN: 404,
    ErrorCode.IPC_CHANNEL_NOT_ALLOWED: 403,
    ErrorCode.IPC_SUBSCRIBE_FAILED: 503,
    ErrorCode.VERIFY_SCHEMA: 422,
    ErrorCode.VERIFY_PATH: 422,
    ErrorCode.PATH_TRAVERSAL: 403,
    ErrorCode.FS_NOT_FOUND: 404,
    ErrorCode.FS_PERMISSION: 403,
    ErrorCode.FS_TOO_LARGE: 413,
    ErrorCode.FS_READ_FAILED: 500,
    ErrorCode.FS_WRITE_FAILED: 500,
    ErrorCode.FS_WATCH_FAILED: 500,
    ErrorCode.CLI_SPAWN_FAILED: 500,
    ErrorCode.CLI_NOT_FOUND: 404,
    ErrorCode.CLI_CANCEL_FAILED: 500,
    ErrorCode.CFG_MISSING: 409,
    ErrorCode.CFG_INVALID: 422,
    ErrorCode.INTERNAL_ERROR: 500,
}


def get_host(request: Request) -> HostApp:
    return request.app.state.host


def error_response(error: LoopDeskError) -> JSONResponse:
    """Render a LoopDeskError as ``{"error": {...}}`` with the mapped status."""
    status = STATUS_BY_CODE.get(error.code, 500)
    headers: dict[str, str] = {}
    if error.code == ErrorCode.IPC_RATE_LIMITED:
        retry_ms = int(error.context.get("retry_after_ms", 0))
        headers["Retry-After"] = str(max(1, math.ceil(retry_ms / 1000)))
    return JSONResponse({"error": error.to_dict()}, status_code=status, headers=headers)


# ═══════════════════════════════════════════════════════════════
# CHANNEL INVOCATION
# ═══════════════════════════════════════════════════════════════


@router.post("/ipc/{channel}", response_model=None)
async def invoke_channel(channel: str, request: Request) -> Any:
    """Invoke one request/response channel with a JSON body."""
    host = get_host(request)
    body = await request.body()
    payload: Any = {}
    if body:
        try:
            payload = await request.json()
        except ValueError:
            return error_response(
                LoopDeskError(
                    code=ErrorCode.VERIFY_SCHEMA,
                    context={"channel": channel, "detail": "body is not valid JSON"},
                )
            )
    try:
        return await host.invoke(channel, payload)
    except LoopDeskError as e:
        if e.code == ErrorCode.INTERNAL_ERROR:
            logger.error("%s", e)
        return error_response(e)


@router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    """Health check with registry counts."""
    return get_host(request).health()


# ═══════════════════════════════════════════════════════════════
# EVENT STREAM
# ═══════════════════════════════════════════════════════════════


def _parse_channels(raw: str | None) -> frozenset[str] | None:
    if not raw:
        return None
    return frozenset(part.strip() for part in raw.split(",") if part.strip())


@router.websocket("/events")
async def stream_events(websocket: WebSocket, channels: str | None = None) -> None:
    """Stream pushed events as ``{"channel", "payload"}`` frames.

    ``channels`` is an optional comma-separated filter (e.g. ``cli:output,cli:complete``).
    """
    host: HostApp = websocket.app.state.host
    await websocket.accept()

    wanted = _parse_channels(channels)
    if wanted is not None and not wanted <= PUSH_CHANNELS:
        unknown = ", ".join(sorted(wanted - PUSH_CHANNELS))
        await websocket.close(code=4400, reason=f"Unknown channels: {unknown}")
        return

    sink = QueueSink(wanted, maxsize=host.config.server.event_queue_size)
    if not host.bus.attach(sink):
        await websocket.close(code=4029, reason="Too many connections")
        return

    async def drain_client() -> None:
        # Keep reading so a disconnect is noticed
        while True:
            await websocket.receive_text()

    reader = asyncio.create_task(drain_client())
    try:
        while not reader.done():
            try:
                event = await asyncio.wait_for(sink.get(), timeout=_DROP_POLL_SECONDS)
            except TimeoutError:
                if sink.dropped:
                    await websocket.close(code=4008, reason="Event consumer too slow")
                    break
                continue
            await websocket.send_json(event.to_dict())
    except WebSocketDisconnect:
        pass
    finally:
        host.bus.detach(sink)
        reader.cancel()
        with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
            await reader
