"""
============================================================================
BarterBay Live Trade
Inbound Message Schemas - Pydantic Models for WebSocket Commands
============================================================================

Reliability Level: L6 Critical
Input Constraints: JSON objects with a string `type` discriminator
Side Effects: None (pure validation)

Client payloads use camelCase keys (targetUserId, tradeId, itemId); the
models expose snake_case attributes through aliases. Identifiers are strict
positive integers: booleans, floats and numeric strings are rejected.

============================================================================
"""

from typing import Optional, Dict, Type, Literal

from pydantic import (
    BaseModel,
    Field,
    field_validator,
    ConfigDict,
)


# ============================================================================
# CONSTANTS
# ============================================================================

MAX_TRADE_ID_LENGTH = 64
MAX_USERNAME_LENGTH = 64


# ============================================================================
# BASE MODELS
# ============================================================================

class LiveTradeMessage(BaseModel):
    """
    Base for every client -> server message.

    Unknown extra keys are ignored so older clients keep working.
    """

    model_config = ConfigDict(
        extra="ignore",
        populate_by_name=True,
        frozen=True,
    )

    type: str


class TradeScopedMessage(LiveTradeMessage):
    """Message addressed to one existing trade."""

    trade_id: str = Field(
        ...,
        alias="tradeId",
        min_length=1,
        max_length=MAX_TRADE_ID_LENGTH,
        description="Session identifier returned in trade_invite_sent",
    )

    @field_validator("trade_id", mode="before")
    @classmethod
    def validate_trade_id(cls, v):
        if isinstance(v, str):
            return v.strip()
        return v


# ============================================================================
# COMMAND MODELS
# ============================================================================

class TradeInviteMessage(LiveTradeMessage):
    """
    Invite another user to a live trade.

    Example:
        {"type": "trade_invite", "targetUserId": 7, "targetUsername": "bob"}
    """

    type: Literal["trade_invite"] = "trade_invite"
    target_user_id: int = Field(..., alias="targetUserId", gt=0, strict=True)
    target_username: Optional[str] = Field(
        None, alias="targetUsername", max_length=MAX_USERNAME_LENGTH
    )
    listing_item_id: Optional[int] = Field(
        None, alias="listingItemId", gt=0, strict=True
    )


class TradeAcceptMessage(TradeScopedMessage):
    type: Literal["trade_accept"] = "trade_accept"


class TradeDeclineMessage(TradeScopedMessage):
    type: Literal["trade_decline"] = "trade_decline"


class AddItemMessage(TradeScopedMessage):
    """Offer `quantity` units of an owned item; quantity defaults to 1."""

    type: Literal["add_item"] = "add_item"
    item_id: int = Field(..., alias="itemId", gt=0, strict=True)
    quantity: int = Field(1, ge=1, strict=True)


class RemoveItemMessage(TradeScopedMessage):
    """Withdraw units of an offered item; omitting quantity removes the line."""

    type: Literal["remove_item"] = "remove_item"
    item_id: int = Field(..., alias="itemId", gt=0, strict=True)
    quantity: Optional[int] = Field(None, ge=1, strict=True)


class ConfirmTradeMessage(TradeScopedMessage):
    type: Literal["confirm_trade"] = "confirm_trade"


class CancelTradeMessage(TradeScopedMessage):
    type: Literal["cancel_trade"] = "cancel_trade"


class PingMessage(LiveTradeMessage):
    type: Literal["ping"] = "ping"


class AuthMessage(LiveTradeMessage):
    """First-frame authentication when no token was given in the query."""

    type: Literal["auth"] = "auth"
    token: str = Field(..., min_length=1)


# ============================================================================
# DISPATCH TABLE
# ============================================================================

MESSAGE_MODELS: Dict[str, Type[LiveTradeMessage]] = {
    "trade_invite": TradeInviteMessage,
    "trade_accept": TradeAcceptMessage,
    "trade_decline": TradeDeclineMessage,
    "add_item": AddItemMessage,
    "remove_item": RemoveItemMessage,
    "confirm_trade": ConfirmTradeMessage,
    "cancel_trade": CancelTradeMessage,
    "ping": PingMessage,
}


__all__ = [
    "LiveTradeMessage",
    "TradeScopedMessage",
    "TradeInviteMessage",
    "TradeAcceptMessage",
    "TradeDeclineMessage",
    "AddItemMessage",
    "RemoveItemMessage",
    "ConfirmTradeMessage",
    "CancelTradeMessage",
    "PingMessage",
    "AuthMessage",
    "MESSAGE_MODELS",
]
