"""HTTP/WebSocket bridge for the LoopDesk host."""

from loopdesk.server.main import create_app

__all__ = ["create_app"]
