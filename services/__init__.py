"""
============================================================================
BarterBay Live Trade - Services Layer
============================================================================

Live-trade negotiation core: session registry, state machine, connection
manager, inventory store, notification fan-out and the staleness sweeper.

services.live_trade_gateway is imported directly by the app layer; it
depends on app.auth, which itself depends on services.live_trade_models.

Reliability Level: L6 Critical
============================================================================
"""

from services.live_trade_models import (
    LiveTradeError,
    LiveTradeErrorCode,
    AlreadyInSession,
    SessionNotFound,
    NotAParticipant,
    ItemUnavailable,
    InvalidState,
    CommitConflict,
    ConnectionSuperseded,
    PartnerOffline,
    MalformedMessage,
    UnknownMessageType,
    InternalError,
    TradeState,
    OfferLine,
    TradeSession,
    UserRef,
)

from services.live_trade_config import (
    LiveTradeConfig,
    LiveTradeConfigurationError,
    get_live_trade_config,
    reset_live_trade_config,
)

from services.inventory_store import (
    Holding,
    Transfer,
    TransferResult,
    TradeRecordContext,
    InventoryStore,
    InMemoryInventoryStore,
    SqlInventoryStore,
)

from services.trade_session_registry import TradeSessionRegistry

from services.connection_manager import (
    ConnectionManager,
    QueuedWebSocketConnection,
)

from services.notification_service import (
    NotificationService,
    SocketNotificationSubscriber,
    TradeNotification,
)

from services.trade_state_machine import (
    EndReason,
    LiveTradeStateMachine,
)

from services.stale_session_worker import StaleSessionWorker

__all__ = [
    # Models and errors
    "LiveTradeError",
    "LiveTradeErrorCode",
    "AlreadyInSession",
    "SessionNotFound",
    "NotAParticipant",
    "ItemUnavailable",
    "InvalidState",
    "CommitConflict",
    "ConnectionSuperseded",
    "PartnerOffline",
    "MalformedMessage",
    "UnknownMessageType",
    "InternalError",
    "TradeState",
    "OfferLine",
    "TradeSession",
    "UserRef",
    # Configuration
    "LiveTradeConfig",
    "LiveTradeConfigurationError",
    "get_live_trade_config",
    "reset_live_trade_config",
    # Inventory
    "Holding",
    "Transfer",
    "TransferResult",
    "TradeRecordContext",
    "InventoryStore",
    "InMemoryInventoryStore",
    "SqlInventoryStore",
    # Sessions and transport
    "TradeSessionRegistry",
    "ConnectionManager",
    "QueuedWebSocketConnection",
    "NotificationService",
    "SocketNotificationSubscriber",
    "TradeNotification",
    "EndReason",
    "LiveTradeStateMachine",
    "StaleSessionWorker",
]
