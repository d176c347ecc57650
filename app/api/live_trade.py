"""
============================================================================
BarterBay Live Trade
WebSocket Endpoint and Status API
============================================================================

Reliability Level: L6 Critical
Input Constraints:
    - Session token as `token` query parameter, or as the first frame
      {"type": "auth", "token": "..."} when the query parameter is absent
Side Effects:
    - Binds sockets in the ConnectionManager
    - Dispatches every frame to the LiveTradeGateway on a worker thread

ENDPOINTS:
    WS  /live-trade                       - Live-trade protocol socket
    GET /api/live-trade/status            - Registry and connection counts
    GET /api/live-trade/online/{user_id}  - Whether a user has a live socket

CLOSE CODES:
    1008: Missing or invalid token
    4000: Connection superseded by a newer socket for the same user

============================================================================
"""

import asyncio
import logging
from typing import Optional, Union

from fastapi import APIRouter, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError

from app.auth.security import AuthenticationError
from app.schemas.live_trade import AuthMessage
from services.connection_manager import QueuedWebSocketConnection
from services.live_trade_gateway import LiveTradeGateway

# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# Router Configuration
# ============================================================================

router = APIRouter()

# WebSocket policy violation
AUTH_FAILURE_CLOSE_CODE = 1008


def get_gateway(request: Request) -> LiveTradeGateway:
    return request.app.state.gateway


# ============================================================================
# WebSocket Endpoint
# ============================================================================

@router.websocket("/live-trade")
async def live_trade_socket(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
):
    """
    Live-trade socket.

    Frames are handled one at a time per socket, each on a worker thread;
    outbound events flow through a QueuedWebSocketConnection so worker
    threads never write to the socket directly.
    """
    gateway: LiveTradeGateway = websocket.app.state.gateway

    await websocket.accept()

    if not token:
        token = await _receive_auth_frame(websocket)
        if token is None:
            return

    try:
        user = await run_in_threadpool(gateway.authenticate, token)
    except AuthenticationError as e:
        logger.warning(
            f"[LIVE-TRADE-WS] Authentication failed | "
            f"error_code={e.error_code} | "
            f"message={e.message}"
        )
        await websocket.close(code=AUTH_FAILURE_CLOSE_CODE, reason=e.error_code)
        return

    connection = QueuedWebSocketConnection(websocket)
    pump_task = asyncio.create_task(connection.pump())

    await run_in_threadpool(gateway.connect, user, connection)

    try:
        while True:
            raw = await _receive_frame(websocket)
            await run_in_threadpool(gateway.handle_message, user, raw, connection)
    except WebSocketDisconnect as e:
        logger.info(
            f"[LIVE-TRADE-WS] Socket closed by client | "
            f"user_id={user.id} | "
            f"code={e.code}"
        )
    except Exception as e:
        logger.error(
            f"[LIVE-TRADE-WS] Socket loop failed | "
            f"user_id={user.id} | "
            f"error={str(e)}",
            exc_info=True,
        )
    finally:
        connection.stop()
        await run_in_threadpool(gateway.disconnect, user.id, connection)
        await pump_task


async def _receive_frame(websocket: WebSocket) -> Union[str, bytes]:
    """
    Next text or binary frame.

    Raises:
        WebSocketDisconnect: The client closed the socket
    """
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(code=message.get("code", 1000))

    text = message.get("text")
    if text is not None:
        return text
    return message.get("bytes") or b""


async def _receive_auth_frame(websocket: WebSocket) -> Optional[str]:
    try:
        first = await _receive_frame(websocket)
    except WebSocketDisconnect:
        return None

    try:
        return AuthMessage.model_validate_json(first).token
    except ValidationError:
        logger.warning("[LIVE-TRADE-WS] First frame was not an auth message")
        await websocket.close(code=AUTH_FAILURE_CLOSE_CODE, reason="AUTH-001")
        return None


# ============================================================================
# Status Endpoints
# ============================================================================

@router.get(
    "/api/live-trade/status",
    summary="Live Trade Status",
    description="Session registry and connection counts.",
    tags=["Live Trade"]
)
async def live_trade_status(request: Request):
    gateway = get_gateway(request)
    registry = request.app.state.registry
    return {
        "sessions": registry.get_status(),
        "connections": gateway.connections.get_status(),
        "notifications": request.app.state.runtime.notifier.get_status(),
        "config": gateway.state_machine.config.to_dict(),
    }


@router.get(
    "/api/live-trade/online/{user_id}",
    summary="User Presence",
    description="Whether the user currently has a bound live-trade socket.",
    tags=["Live Trade"]
)
async def user_online(user_id: int, request: Request):
    gateway = get_gateway(request)
    return {"userId": user_id, "online": gateway.connections.is_connected(user_id)}
