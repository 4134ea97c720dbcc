"""Channel dispatcher.

Routes one request through the middleware chain (rate limiter, path
validator), validates it against the channel's request model, runs the
handler and serializes the response with camelCase keys.

Failure contract:
- unknown channel           → IPC_CHANNEL_UNKNOWN
- schema violation          → VERIFY_SCHEMA with ``details: [{field, message}]``
- LoopDeskError from below  → propagated unchanged
- anything else             → logged and wrapped as INTERNAL_ERROR
"""

import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from pydantic import ValidationError

from loopdesk.foundation.errors import ErrorCode, LoopDeskError
from loopdesk.host.channels import ChannelRegistry, ChannelSpec

logger = logging.getLogger(__name__)

Next = Callable[[Any], Awaitable[Any]]
Middleware = Callable[[str, Any, Next], Awaitable[Any]]


def _schema_error(channel: str, exc: ValidationError) -> LoopDeskError:
    details = [
        {
            "field": ".".join(str(part) for part in err["loc"]) or "(root)",
            "message": err["msg"],
        }
        for err in exc.errors()
    ]
    summary = "; ".join(f"{d['field']}: {d['message']}" for d in details)
    return LoopDeskError(
        code=ErrorCode.VERIFY_SCHEMA,
        context={"channel": channel, "detail": summary, "details": details},
        cause=exc,
    )


class ChannelDispatcher:
    """Dispatch requests on registered channels.

    Middlewares run in the order given; each receives ``(channel, payload,
    next_)`` and either returns ``await next_(payload)`` or raises.
    """

    def __init__(self, registry: ChannelRegistry, middlewares: Sequence[Middleware] = ()) -> None:
        self._registry = registry
        self._middlewares = list(middlewares)

    @property
    def registry(self) -> ChannelRegistry:
        return self._registry

    async def dispatch(self, channel: str, payload: Any = None) -> dict[str, Any]:
        """Handle one request and return the camelCase response body."""
        spec = self._registry.get(channel)
        if spec is None:
            raise LoopDeskError(code=ErrorCode.IPC_CHANNEL_UNKNOWN, context={"channel": channel})

        async def terminal(data: Any) -> Any:
            return await self._invoke(spec, data)

        call: Next = terminal
        for middleware in reversed(self._middlewares):
            call = self._bind(middleware, channel, call)

        try:
            return await call(payload if payload is not None else {})
        except LoopDeskError:
            raise
        except Exception as e:
            logger.exception("Handler for %s failed", channel)
            raise LoopDeskError(
                code=ErrorCode.INTERNAL_ERROR,
                context={"channel": channel, "detail": str(e) or type(e).__name__},
                cause=e,
            ) from e

    @staticmethod
    def _bind(middleware: Middleware, channel: str, next_: Next) -> Next:
        async def step(data: Any) -> Any:
            return await middleware(channel, data, next_)

        return step

    async def _invoke(self, spec: ChannelSpec, data: Any) -> dict[str, Any]:
        try:
            request = spec.request.model_validate(data)
        except ValidationError as e:
            raise _schema_error(spec.name, e) from e

        response = await spec.handler(request)
        return response.model_dump(by_alias=True)
