# ============================================================================
# BarterBay Live Trade
# Pydantic Schemas - Inbound WebSocket Message Validation
# ============================================================================

from app.schemas.live_trade import (
    AddItemMessage,
    AuthMessage,
    CancelTradeMessage,
    ConfirmTradeMessage,
    LiveTradeMessage,
    MESSAGE_MODELS,
    PingMessage,
    RemoveItemMessage,
    TradeAcceptMessage,
    TradeDeclineMessage,
    TradeInviteMessage,
)

__all__ = [
    "AddItemMessage",
    "AuthMessage",
    "CancelTradeMessage",
    "ConfirmTradeMessage",
    "LiveTradeMessage",
    "MESSAGE_MODELS",
    "PingMessage",
    "RemoveItemMessage",
    "TradeAcceptMessage",
    "TradeDeclineMessage",
    "TradeInviteMessage",
]
