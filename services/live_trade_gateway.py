"""
============================================================================
BarterBay Live Trade - WebSocket Gateway
============================================================================

Reliability Level: L6 Critical
Input Constraints: Raw text frames from authenticated sockets
Side Effects: Dispatches commands to the state machine, sends events

Translation layer between the socket protocol and the state machine:
- authenticate(token) resolves the handshake token to a user
- connect()/disconnect() bind and unbind sockets
- handle_message() decodes JSON, validates it against the inbound schemas,
  dispatches it, and turns every failure into an `error` event for the
  originating socket only

The gateway holds no business state.

ERROR MAPPING:
    - not JSON / not an object / schema violation -> MalformedMessage
    - missing or unrecognised `type`             -> UnknownMessageType
    - LiveTradeError raised by the state machine  -> its own code
    - anything else                               -> InternalError (logged)

============================================================================
"""

from typing import Optional, Any, Union
import json
import logging

from pydantic import ValidationError

from app.auth.security import TokenVerifier
from app.observability.metrics import record_error, record_message
from app.schemas.live_trade import (
    MESSAGE_MODELS,
    AddItemMessage,
    CancelTradeMessage,
    ConfirmTradeMessage,
    LiveTradeMessage,
    PingMessage,
    RemoveItemMessage,
    TradeAcceptMessage,
    TradeDeclineMessage,
    TradeInviteMessage,
)
from services.connection_manager import ConnectionManager
from services.live_trade_models import (
    ConnectionSuperseded,
    InternalError,
    LiveTradeError,
    MalformedMessage,
    UnknownMessageType,
    UserRef,
)
from services.trade_state_machine import LiveTradeStateMachine

# Configure module logger
logger = logging.getLogger(__name__)


class LiveTradeGateway:
    """
    WebSocket message router for live trades.

    Wires the ConnectionManager's disconnect callback to the state machine
    so a closed socket cancels its user's active session.

    Reliability Level: L6 Critical
    """

    def __init__(
        self,
        state_machine: LiveTradeStateMachine,
        connections: ConnectionManager,
        token_verifier: Optional[TokenVerifier] = None,
    ) -> None:
        self._state_machine = state_machine
        self._connections = connections
        self._token_verifier = token_verifier or TokenVerifier()
        self._connections.set_disconnect_callback(state_machine.handle_disconnect)

    @property
    def connections(self) -> ConnectionManager:
        return self._connections

    @property
    def state_machine(self) -> LiveTradeStateMachine:
        return self._state_machine

    # =========================================================================
    # Connection Lifecycle
    # =========================================================================

    def authenticate(self, token: Optional[str]) -> UserRef:
        """
        Raises:
            AuthenticationError: Token missing or invalid
        """
        return self._token_verifier.verify_token(token)

    def connect(self, user: UserRef, handle: Any) -> None:
        self._connections.bind(user.id, handle)
        self._connections.send(user.id, {
            "type": "connection_success",
            "user": user.to_dict(),
            "message": "Connected to live trade service",
        })
        logger.info(
            f"[GATEWAY] User connected | "
            f"user_id={user.id} | "
            f"username={user.username}"
        )

    def disconnect(self, user_id: int, handle: Optional[Any] = None) -> bool:
        return self._connections.unbind(user_id, handle)

    # =========================================================================
    # Message Handling
    # =========================================================================

    def handle_message(
        self,
        user: UserRef,
        raw: Union[str, bytes],
        handle: Optional[Any] = None,
    ) -> None:
        """
        Process one inbound frame. Never raises.

        When `handle` is given and is no longer the user's current socket
        the frame is rejected with ConnectionSuperseded.
        """
        if handle is not None and self._connections.current_handle(user.id) is not handle:
            error = ConnectionSuperseded("This connection has been replaced")
            record_error(error.code)
            try:
                handle.send_text(json.dumps(error.to_event()))
            except Exception as e:
                logger.debug(
                    f"[GATEWAY] Superseded socket rejected reply | "
                    f"user_id={user.id} | "
                    f"error={str(e)}"
                )
            return

        try:
            command = self.parse_message(raw)
            record_message(command.type)
            self._dispatch(user, command)
        except LiveTradeError as e:
            logger.info(
                f"[GATEWAY] Request rejected | "
                f"user_id={user.id} | "
                f"code={e.code} | "
                f"trade_id={e.trade_id} | "
                f"message={e.message}"
            )
            self._send_error(user, e)
        except Exception as e:
            logger.error(
                f"[GATEWAY] Unhandled error processing message | "
                f"user_id={user.id} | "
                f"error={str(e)}",
                exc_info=True,
            )
            self._send_error(user, InternalError("Unexpected server error"))

    def parse_message(self, raw: Union[str, bytes]) -> LiveTradeMessage:
        """
        Decode and validate one frame.

        Raises:
            MalformedMessage: Not JSON, not an object, or schema violation
            UnknownMessageType: Missing or unrecognised `type`
        """
        if isinstance(raw, bytes):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError:
                raise MalformedMessage("Message is not valid UTF-8")

        try:
            data = json.loads(raw)
        except ValueError:
            raise MalformedMessage("Message is not valid JSON")

        if not isinstance(data, dict):
            raise MalformedMessage("Message must be a JSON object")

        message_type = data.get("type")
        if not isinstance(message_type, str) or not message_type:
            record_message("unknown")
            raise UnknownMessageType("Message type is missing")

        model = MESSAGE_MODELS.get(message_type)
        if model is None:
            record_message("unknown")
            raise UnknownMessageType(f"Unknown message type: {message_type}")

        try:
            return model.model_validate(data)
        except ValidationError as e:
            record_message(message_type)
            fields = ", ".join(
                ".".join(str(part) for part in error["loc"]) or "message"
                for error in e.errors()
            )
            trade_id = data.get("tradeId")
            raise MalformedMessage(
                f"Invalid {message_type} message: {fields}",
                trade_id=trade_id if isinstance(trade_id, str) else None,
            )

    def _dispatch(self, user: UserRef, command: LiveTradeMessage) -> None:
        machine = self._state_machine

        if isinstance(command, PingMessage):
            self._connections.send(user.id, {"type": "pong"})
        elif isinstance(command, TradeInviteMessage):
            target = UserRef(
                id=command.target_user_id,
                username=command.target_username or f"user-{command.target_user_id}",
            )
            machine.invite(user, target, command.listing_item_id)
        elif isinstance(command, TradeAcceptMessage):
            machine.accept(user.id, command.trade_id)
        elif isinstance(command, TradeDeclineMessage):
            machine.decline(user.id, command.trade_id)
        elif isinstance(command, AddItemMessage):
            machine.add_item(user.id, command.trade_id, command.item_id, command.quantity)
        elif isinstance(command, RemoveItemMessage):
            machine.remove_item(user.id, command.trade_id, command.item_id, command.quantity)
        elif isinstance(command, ConfirmTradeMessage):
            machine.confirm(user.id, command.trade_id)
        elif isinstance(command, CancelTradeMessage):
            machine.cancel(user.id, command.trade_id)
        else:
            raise UnknownMessageType(f"Unhandled message type: {command.type}")

    def _send_error(self, user: UserRef, error: LiveTradeError) -> None:
        record_error(error.code)
        self._connections.send(user.id, error.to_event())


__all__ = [
    "LiveTradeGateway",
]
