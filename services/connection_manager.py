"""
============================================================================
BarterBay Live Trade - Connection Manager
============================================================================

Reliability Level: L6 Critical
Input Constraints: One binding per authenticated user id
Side Effects: Socket writes (non-blocking), socket closes

Maps authenticated user ids to live socket handles and delivers session
events to them. The state machine only ever sees user ids; transport
objects stay behind this interface.

RECONNECT POLICY (last connection wins):
    Binding a second socket for the same user supersedes the first. The old
    socket receives an `error` event (ConnectionSuperseded) and is closed
    with the configured application close code (default 4000). The user's
    trade session is untouched and continues on the new socket. When the
    superseded socket later reports its own close, unbind() sees it is no
    longer current and does nothing.

HANDLE CONTRACT:
    send_text(message: str) -> bool    must never block
    close(code: int, reason: str)      must never block

============================================================================
"""

from typing import Optional, Dict, Any, List, Callable
from dataclasses import dataclass
import asyncio
import json
import logging
import threading

from app.observability.metrics import update_connection_count
from services.live_trade_config import DEFAULT_SUPERSEDE_CLOSE_CODE
from services.live_trade_models import ConnectionSuperseded, LiveTradeErrorCode

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# QueuedWebSocketConnection
# =============================================================================

@dataclass(frozen=True)
class _CloseFrame:
    code: Optional[int]
    reason: str = ""


class QueuedWebSocketConnection:
    """
    Thread-safe handle around a Starlette/FastAPI WebSocket.

    Session events are produced on worker threads while the socket belongs
    to the event loop, so send_text() only schedules an enqueue on the loop
    and returns. pump() runs as a task on the loop and performs the actual
    writes in order.
    """

    def __init__(
        self,
        websocket: Any,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self._websocket = websocket
        self._loop = loop or asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send_text(self, message: str) -> bool:
        if self._closed:
            return False
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, message)
        except RuntimeError:
            # Event loop already shut down
            self._closed = True
            return False
        return True

    def close(self, code: int = 1000, reason: str = "") -> None:
        self._enqueue_close(_CloseFrame(code=code, reason=reason))

    def stop(self) -> None:
        """End pump() without touching the socket (peer already gone)."""
        self._enqueue_close(_CloseFrame(code=None))

    def _enqueue_close(self, frame: _CloseFrame) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, frame)
        except RuntimeError:
            pass

    async def pump(self) -> None:
        """Drain queued messages onto the socket until a close frame."""
        while True:
            item = await self._queue.get()

            if isinstance(item, _CloseFrame):
                if item.code is not None:
                    try:
                        await self._websocket.close(code=item.code, reason=item.reason)
                    except Exception as e:
                        logger.debug(
                            f"[CONNECTION] Close on finished socket ignored | "
                            f"error={str(e)}"
                        )
                return

            try:
                await self._websocket.send_text(item)
            except Exception as e:
                logger.info(
                    f"[CONNECTION] Socket write failed, stopping pump | "
                    f"error={str(e)}"
                )
                self._closed = True
                return


# =============================================================================
# ConnectionManager
# =============================================================================

class ConnectionManager:
    """
    userId -> socket handle bindings.

    THREAD SAFETY:
        Bindings are guarded by one lock. Handle I/O and the disconnect
        callback always run outside it.

    Reliability Level: L6 Critical
    """

    def __init__(
        self,
        on_user_disconnected: Optional[Callable[[int], None]] = None,
        supersede_close_code: int = DEFAULT_SUPERSEDE_CLOSE_CODE,
    ) -> None:
        self._lock = threading.Lock()
        self._bindings: Dict[int, Any] = {}
        self._on_user_disconnected = on_user_disconnected
        self._supersede_close_code = supersede_close_code

    def set_disconnect_callback(
        self,
        callback: Optional[Callable[[int], None]],
    ) -> None:
        self._on_user_disconnected = callback

    # -------------------------------------------------------------------------
    # Binding lifecycle
    # -------------------------------------------------------------------------

    def bind(self, user_id: int, handle: Any) -> Optional[Any]:
        """
        Bind a socket to a user, superseding any previous binding.

        Returns:
            The superseded handle, or None
        """
        with self._lock:
            previous = self._bindings.get(user_id)
            self._bindings[user_id] = handle
            count = len(self._bindings)

        update_connection_count(count)

        if previous is not None and previous is not handle:
            self._supersede(user_id, previous)
            return previous

        logger.info(
            f"[CONNECTION] User bound | "
            f"user_id={user_id} | "
            f"connections={count}"
        )
        return None

    def _supersede(self, user_id: int, handle: Any) -> None:
        event = ConnectionSuperseded(
            "This account connected from another location"
        ).to_event()
        try:
            handle.send_text(json.dumps(event))
            handle.close(
                self._supersede_close_code,
                LiveTradeErrorCode.CONNECTION_SUPERSEDED,
            )
        except Exception as e:
            logger.warning(
                f"[CONNECTION] Failed to close superseded socket | "
                f"user_id={user_id} | "
                f"error={str(e)}"
            )

        logger.info(
            f"[CONNECTION] Connection superseded | "
            f"user_id={user_id} | "
            f"close_code={self._supersede_close_code}"
        )

    def unbind(self, user_id: int, handle: Optional[Any] = None) -> bool:
        """
        Remove a binding and report the disconnect.

        When `handle` is given and is no longer the current binding (a
        superseded socket closing late) nothing happens.

        Returns:
            True if a binding was removed and the callback fired
        """
        with self._lock:
            current = self._bindings.get(user_id)
            if current is None:
                return False
            if handle is not None and current is not handle:
                logger.debug(
                    f"[CONNECTION] Ignoring close of superseded socket | "
                    f"user_id={user_id}"
                )
                return False
            del self._bindings[user_id]
            count = len(self._bindings)

        update_connection_count(count)
        logger.info(
            f"[CONNECTION] User unbound | "
            f"user_id={user_id} | "
            f"connections={count}"
        )

        callback = self._on_user_disconnected
        if callback is not None:
            try:
                callback(user_id)
            except Exception as e:
                logger.error(
                    f"[CONNECTION] Disconnect callback failed | "
                    f"user_id={user_id} | "
                    f"error={str(e)}",
                    exc_info=True,
                )
        return True

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    def send(self, user_id: int, event: Dict[str, Any]) -> bool:
        """
        Best-effort delivery of one event.

        Returns:
            False when the user has no binding or the handle refused the
            message. Never raises.
        """
        with self._lock:
            handle = self._bindings.get(user_id)

        if handle is None:
            logger.debug(
                f"[CONNECTION] Not delivered, user offline | "
                f"user_id={user_id} | "
                f"event_type={event.get('type')}"
            )
            return False

        try:
            message = json.dumps(event, default=str)
        except (TypeError, ValueError) as e:
            logger.error(
                f"[CONNECTION] Event not serializable | "
                f"user_id={user_id} | "
                f"event_type={event.get('type')} | "
                f"error={str(e)}"
            )
            return False

        try:
            return bool(handle.send_text(message))
        except Exception as e:
            logger.warning(
                f"[CONNECTION] Send failed | "
                f"user_id={user_id} | "
                f"event_type={event.get('type')} | "
                f"error={str(e)}"
            )
            return False

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def is_connected(self, user_id: int) -> bool:
        with self._lock:
            return user_id in self._bindings

    def current_handle(self, user_id: int) -> Optional[Any]:
        with self._lock:
            return self._bindings.get(user_id)

    def connected_user_ids(self) -> List[int]:
        with self._lock:
            return list(self._bindings.keys())

    @property
    def connection_count(self) -> int:
        with self._lock:
            return len(self._bindings)

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "connections": len(self._bindings),
                "supersede_close_code": self._supersede_close_code,
            }


__all__ = [
    "ConnectionManager",
    "QueuedWebSocketConnection",
]
