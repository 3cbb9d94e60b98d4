from .router import create_router
from .ws import LogStreamHub, WebSocketSessionClient, create_ws_router

__all__ = ["LogStreamHub", "WebSocketSessionClient", "create_router", "create_ws_router"]
