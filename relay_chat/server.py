"""Relay chat server implementation.

Socket.IO carries the live events; message history is served both as plain
HTTP routes for the browser client and as MCP tools.
"""

from typing import Any, Dict, Optional
import functools
import logging

import socketio
from fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

from relay_chat.config import get_settings
from relay_chat.errors import PersistenceError
from relay_chat.events import EVENT_TYPES
from relay_chat.history import MessageStore
from relay_chat.router import ChatRouter

settings = get_settings()

# Set up logging
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Initialize FastMCP server for the history queries
mcp: Any = FastMCP(name="relay-chat", version="0.1.0")

# Initialize message routing
store = MessageStore(settings.data_dir, timeout=settings.store_timeout)
router = ChatRouter(
    store,
    typing_timeout=settings.typing_timeout,
    reject_invalid_events=settings.reject_invalid_events,
)


def _cors_origins(value: str) -> str | list[str]:
    if value.strip() == "*":
        return "*"
    return [origin.strip() for origin in value.split(",") if origin.strip()]


sio = socketio.AsyncServer(
    async_mode="asgi",
    cors_allowed_origins=_cors_origins(settings.cors_allowed_origins),
)


def clamp_limit(limit: Optional[int]) -> int:
    """Bound a requested history size to [1, history_limit]."""
    if limit is None:
        return settings.history_limit
    return max(1, min(limit, settings.history_limit))


# -------------------- Socket.IO --------------------


@sio.event
async def connect(sid: str, environ: Dict[str, Any], auth: Any = None) -> None:
    """Track a new client session."""
    router.connect(sid, functools.partial(sio.emit, to=sid))


@sio.event
async def disconnect(sid: str, *args: Any) -> None:
    """Release the session's room, presence entry and typing state."""
    await router.disconnect(sid)


def _event_handler(name: str):
    async def handler(sid: str, data: Any = None) -> None:
        connection = router.get_connection(sid)
        if connection is None:
            logger.warning(f"{name} from unknown session {sid}")
            return
        try:
            await router.handle(connection, name, data)
        except Exception:
            # One bad event must not take the session down
            logger.exception(f"Error handling {name} from {sid}")

    handler.__name__ = f"on_{name}"
    return handler


for _event_name in EVENT_TYPES:
    sio.on(_event_name, handler=_event_handler(_event_name))


# -------------------- HTTP history routes --------------------


def _query_limit(request: Request) -> int:
    raw = request.query_params.get("limit")
    return clamp_limit(int(raw) if raw is not None else None)


@mcp.custom_route("/api/messages/{room:path}", methods=["GET"])
async def room_history_route(request: Request) -> JSONResponse:
    """Room history, oldest first, newest-bounded."""
    try:
        limit = _query_limit(request)
    except ValueError:
        return JSONResponse({"error": "limit must be an integer"}, status_code=400)

    try:
        messages = await store.get_room_history(request.path_params["room"], limit)
    except PersistenceError as e:
        return JSONResponse({"error": f"Server error: {e}"}, status_code=500)
    return JSONResponse([m.to_dict() for m in messages])


@mcp.custom_route("/api/private/{user_a}/{user_b}", methods=["GET"])
async def private_history_route(request: Request) -> JSONResponse:
    """Private history between two users, in either direction."""
    try:
        limit = _query_limit(request)
    except ValueError:
        return JSONResponse({"error": "limit must be an integer"}, status_code=400)

    try:
        messages = await store.get_private_history(
            request.path_params["user_a"], request.path_params["user_b"], limit
        )
    except PersistenceError as e:
        return JSONResponse({"error": f"Server error: {e}"}, status_code=500)
    return JSONResponse([m.to_dict() for m in messages])


@mcp.custom_route("/health", methods=["GET"])
async def health_route(request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok"})


# -------------------- MCP tools --------------------


@mcp.tool()
async def get_room_history(room: str, limit: int | None = None) -> Dict[str, Any]:
    """Retrieve messages posted to a room.

    Returns messages in chronological order, at most ``limit`` of the most
    recent ones (default and maximum 200).

    Args:
        room: The room name
        limit: Maximum number of messages to return

    Returns:
        room, messages list, and count, or error information
    """
    try:
        messages = await store.get_room_history(room, clamp_limit(limit))
    except PersistenceError as e:
        return {"success": False, "error": str(e)}

    return {
        "room": room,
        "messages": [m.to_dict() for m in messages],
        "count": len(messages),
    }


@mcp.tool()
async def get_private_history(
    user_a: str, user_b: str, limit: int | None = None
) -> Dict[str, Any]:
    """Retrieve private messages exchanged between two users.

    The order of the two usernames does not matter.

    Args:
        user_a: One participant
        user_b: The other participant
        limit: Maximum number of messages to return (most recent)

    Returns:
        participants, messages list, and count, or error information
    """
    try:
        messages = await store.get_private_history(user_a, user_b, clamp_limit(limit))
    except PersistenceError as e:
        return {"success": False, "error": str(e)}

    return {
        "participants": sorted([user_a, user_b]),
        "messages": [m.to_dict() for m in messages],
        "count": len(messages),
    }


@mcp.tool()
async def get_room_status(room: str) -> Dict[str, Any]:
    """Lightweight status check for a room.

    Args:
        room: The room name

    Returns:
        Live members and the total number of stored messages
    """
    members = router.rooms.member_names(room)
    try:
        message_count = await store.count_group_messages(room)
    except PersistenceError as e:
        return {"success": False, "error": str(e)}

    return {
        "room": room,
        "active": bool(members),
        "members": members,
        "message_count": message_count,
    }


@mcp.tool()
async def get_online_users() -> Dict[str, Any]:
    """List usernames that can currently receive private messages."""
    users = router.registry.online_users()
    return {"users": users, "count": len(users)}


# Expose ASGI app for uvicorn: Socket.IO in front, MCP and HTTP routes behind
app = socketio.ASGIApp(sio, other_asgi_app=mcp.http_app())


def main() -> None:
    """Main entry point for the server."""
    import uvicorn

    uvicorn.run("relay_chat.server:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
