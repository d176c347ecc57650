"""
============================================================================
BarterBay Live Trade - Core Data Models
============================================================================

Reliability Level: L6 Critical
Traceability: Every session carries a unique trade_id used in all logs/events

This module defines the data model shared by the live-trade core:
- TradeState: session lifecycle states and the VALID_TRANSITIONS table
- UserRef / OfferLine: immutable identity and offer line value objects
- TradeSession: the negotiation record owned by the session registry
- LiveTradeError hierarchy: every client-visible failure kind

SESSION LIFECYCLE:
    INVITED      -> NEGOTIATING (partner accepts)
    INVITED      -> CANCELLED   (partner declines, cancel, disconnect, timeout)
    NEGOTIATING  -> COMMITTING  (both sides confirmed)
    NEGOTIATING  -> CANCELLED   (cancel, disconnect, timeout)
    COMMITTING   -> COMPLETED   (atomic transfer applied)
    COMMITTING   -> FAILED      (transfer rejected or backend fault)

    Terminal States: COMPLETED, CANCELLED, FAILED

============================================================================
"""

from typing import Optional, Dict, Any, List, Tuple
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import logging
import threading
import uuid

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Error Codes
# =============================================================================

class LiveTradeErrorCode:
    """Error kinds reported to clients in the `code` field of error events."""
    ALREADY_IN_SESSION = "AlreadyInSession"
    SESSION_NOT_FOUND = "SessionNotFound"
    NOT_A_PARTICIPANT = "NotAParticipant"
    ITEM_UNAVAILABLE = "ItemUnavailable"
    INVALID_STATE = "InvalidState"
    COMMIT_CONFLICT = "CommitConflict"
    CONNECTION_SUPERSEDED = "ConnectionSuperseded"
    PARTNER_OFFLINE = "PartnerOffline"
    MALFORMED_MESSAGE = "MalformedMessage"
    UNKNOWN_MESSAGE_TYPE = "UnknownMessageType"
    INTERNAL_ERROR = "InternalError"


# =============================================================================
# Exceptions
# =============================================================================

class LiveTradeError(Exception):
    """
    Base class for live-trade failures.

    Every subclass maps onto one error kind. Raising one of these never
    alters session state; the gateway converts it into an `error` event for
    the originating socket only.
    """

    code = LiveTradeErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, trade_id: Optional[str] = None) -> None:
        self.message = message
        self.trade_id = trade_id
        super().__init__(f"[{self.code}] {message}")

    def to_event(self) -> Dict[str, Any]:
        """Render as an outbound `error` event."""
        event: Dict[str, Any] = {
            "type": "error",
            "code": self.code,
            "message": self.message,
        }
        if self.trade_id is not None:
            event["tradeId"] = self.trade_id
        return event


class AlreadyInSession(LiveTradeError):
    code = LiveTradeErrorCode.ALREADY_IN_SESSION


class SessionNotFound(LiveTradeError):
    code = LiveTradeErrorCode.SESSION_NOT_FOUND


class NotAParticipant(LiveTradeError):
    code = LiveTradeErrorCode.NOT_A_PARTICIPANT


class ItemUnavailable(LiveTradeError):
    code = LiveTradeErrorCode.ITEM_UNAVAILABLE


class InvalidState(LiveTradeError):
    code = LiveTradeErrorCode.INVALID_STATE


class CommitConflict(LiveTradeError):
    code = LiveTradeErrorCode.COMMIT_CONFLICT


class ConnectionSuperseded(LiveTradeError):
    code = LiveTradeErrorCode.CONNECTION_SUPERSEDED


class PartnerOffline(LiveTradeError):
    code = LiveTradeErrorCode.PARTNER_OFFLINE


class MalformedMessage(LiveTradeError):
    code = LiveTradeErrorCode.MALFORMED_MESSAGE


class UnknownMessageType(LiveTradeError):
    code = LiveTradeErrorCode.UNKNOWN_MESSAGE_TYPE


class InternalError(LiveTradeError):
    code = LiveTradeErrorCode.INTERNAL_ERROR


# =============================================================================
# Enums
# =============================================================================

class TradeState(Enum):
    """
    Live-trade session states.

    Reliability Level: L6 Critical
    """
    INVITED = "INVITED"
    NEGOTIATING = "NEGOTIATING"
    COMMITTING = "COMMITTING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


class OfferSide(Enum):
    """Which side of a session a participant owns."""
    INITIATOR = "initiator"
    PARTNER = "partner"


# =============================================================================
# VALID_TRANSITIONS Constant
# =============================================================================

VALID_TRANSITIONS: Dict[TradeState, List[TradeState]] = {
    TradeState.INVITED: [TradeState.NEGOTIATING, TradeState.CANCELLED],
    TradeState.NEGOTIATING: [TradeState.COMMITTING, TradeState.CANCELLED],
    TradeState.COMMITTING: [TradeState.COMPLETED, TradeState.FAILED],
    TradeState.COMPLETED: [],  # Terminal
    TradeState.CANCELLED: [],  # Terminal
    TradeState.FAILED: [],  # Terminal
}

TERMINAL_STATES: Tuple[TradeState, ...] = (
    TradeState.COMPLETED,
    TradeState.CANCELLED,
    TradeState.FAILED,
)

# States the idle sweeper may cancel
IDLE_CANCELLABLE_STATES: Tuple[TradeState, ...] = (
    TradeState.INVITED,
    TradeState.NEGOTIATING,
)


def validate_transition(
    current_state: TradeState,
    target_state: TradeState,
    trade_id: Optional[str] = None,
) -> Tuple[bool, Optional[str]]:
    """
    Validate a state transition against VALID_TRANSITIONS.

    Args:
        current_state: State the session is in
        target_state: State the caller wants to move to
        trade_id: Session identifier for logging

    Returns:
        (True, None) when the transition is legal,
        (False, "InvalidState") otherwise. Illegal attempts are logged.
    """
    valid_targets = VALID_TRANSITIONS.get(current_state, [])

    if target_state not in valid_targets:
        valid_str = (
            "/".join(s.value for s in valid_targets)
            if valid_targets else "NONE (terminal state)"
        )
        logger.error(
            f"[{LiveTradeErrorCode.INVALID_STATE}] "
            f"Invalid state transition: {current_state.value} -> {target_state.value} | "
            f"valid={valid_str} | "
            f"trade_id={trade_id}"
        )
        return (False, LiveTradeErrorCode.INVALID_STATE)

    logger.debug(
        f"[LIVE-TRADE-STATE] Transition validated: "
        f"{current_state.value} -> {target_state.value} | trade_id={trade_id}"
    )
    return (True, None)


def is_terminal_state(state: TradeState) -> bool:
    """Check whether a state has no outbound transitions."""
    return state in TERMINAL_STATES


# =============================================================================
# Value Objects
# =============================================================================

@dataclass(frozen=True)
class UserRef:
    """Authenticated user identity: numeric id plus display name."""
    id: int
    username: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "username": self.username}


@dataclass(frozen=True)
class OfferLine:
    """
    One (item, quantity) line of an offer.

    Display fields are copied from the inventory at the time the line was
    first offered so both clients can render it without a lookup.
    """
    item_id: int
    quantity: int
    name: Optional[str] = None
    image_url: Optional[str] = None

    def with_quantity(self, quantity: int) -> "OfferLine":
        return OfferLine(
            item_id=self.item_id,
            quantity=quantity,
            name=self.name,
            image_url=self.image_url,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "quantity": self.quantity,
            "name": self.name,
            "image_url": self.image_url,
        }


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_trade_id() -> str:
    """Opaque, unguessable session identifier."""
    return uuid.uuid4().hex


# =============================================================================
# TradeSession
# =============================================================================

@dataclass
class TradeSession:
    """
    One live negotiation between exactly two users.

    ============================================================================
    CONCURRENCY CONTRACT:
    ============================================================================
    - Every mutation happens while holding `lock`.
    - Notifications are queued in `pending_notifications` under `lock` and
      delivered only after it is released.
    - Offer lists are replaced, never mutated in place, so lock-free readers
      (reservation accounting in the registry) always see a whole snapshot.
    - initiator/partner never change after creation.
    ============================================================================

    Reliability Level: L6 Critical
    """
    id: str
    initiator: UserRef
    partner: UserRef
    state: TradeState = TradeState.INVITED
    initiator_offer: List[OfferLine] = field(default_factory=list)
    partner_offer: List[OfferLine] = field(default_factory=list)
    initiator_confirmed: bool = False
    partner_confirmed: bool = False
    listing_item_id: Optional[int] = None
    created_at: datetime = field(default_factory=_utc_now)
    updated_at: datetime = field(default_factory=_utc_now)
    ended_at: Optional[datetime] = None
    end_reason: Optional[str] = None
    lock: threading.RLock = field(
        default_factory=threading.RLock, repr=False, compare=False
    )
    # (user_id, event) pairs queued under `lock`, delivered after release
    pending_notifications: List[Tuple[int, Dict[str, Any]]] = field(
        default_factory=list, repr=False, compare=False
    )

    # -------------------------------------------------------------------------
    # Participant helpers
    # -------------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return is_terminal_state(self.state)

    @property
    def both_confirmed(self) -> bool:
        return self.initiator_confirmed and self.partner_confirmed

    def participant_ids(self) -> Tuple[int, int]:
        return (self.initiator.id, self.partner.id)

    def is_participant(self, user_id: int) -> bool:
        return user_id in self.participant_ids()

    def side_of(self, user_id: int) -> OfferSide:
        """
        Resolve which side a user owns.

        Raises:
            NotAParticipant: If the user is neither initiator nor partner
        """
        if user_id == self.initiator.id:
            return OfferSide.INITIATOR
        if user_id == self.partner.id:
            return OfferSide.PARTNER
        raise NotAParticipant(
            f"User {user_id} is not a participant of this trade",
            trade_id=self.id,
        )

    def counterpart_of(self, user_id: int) -> UserRef:
        if self.side_of(user_id) is OfferSide.INITIATOR:
            return self.partner
        return self.initiator

    def offer_of(self, user_id: int) -> List[OfferLine]:
        if self.side_of(user_id) is OfferSide.INITIATOR:
            return self.initiator_offer
        return self.partner_offer

    def set_offer(self, user_id: int, lines: List[OfferLine]) -> None:
        if self.side_of(user_id) is OfferSide.INITIATOR:
            self.initiator_offer = list(lines)
        else:
            self.partner_offer = list(lines)

    def confirmed(self, user_id: int) -> bool:
        if self.side_of(user_id) is OfferSide.INITIATOR:
            return self.initiator_confirmed
        return self.partner_confirmed

    def set_confirmed(self, user_id: int) -> None:
        if self.side_of(user_id) is OfferSide.INITIATOR:
            self.initiator_confirmed = True
        else:
            self.partner_confirmed = True

    def reset_confirmations(self) -> None:
        self.initiator_confirmed = False
        self.partner_confirmed = False

    def offered_quantity(self, user_id: int, item_id: int) -> int:
        return sum(
            line.quantity for line in self.offer_of(user_id)
            if line.item_id == item_id
        )

    def touch(self) -> None:
        self.updated_at = _utc_now()

    def idle_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or _utc_now()
        return (now - self.updated_at).total_seconds()

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def view_for(self, user_id: int) -> Dict[str, Any]:
        """
        Perspective view for one participant.

        `your*` fields describe the viewer's own side, `partner*` fields the
        counterpart's, so both clients can render the same component.
        """
        side = self.side_of(user_id)
        is_initiator = side is OfferSide.INITIATOR
        mine = self.initiator_offer if is_initiator else self.partner_offer
        theirs = self.partner_offer if is_initiator else self.initiator_offer
        return {
            "id": self.id,
            "state": self.state.value,
            "partner": self.counterpart_of(user_id).to_dict(),
            "yourItems": [line.to_dict() for line in mine],
            "partnerItems": [line.to_dict() for line in theirs],
            "yourConfirmed": (
                self.initiator_confirmed if is_initiator else self.partner_confirmed
            ),
            "partnerConfirmed": (
                self.partner_confirmed if is_initiator else self.initiator_confirmed
            ),
            "isInitiator": is_initiator,
            "listingItemId": self.listing_item_id,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Neutral (non-perspective) representation for status endpoints."""
        return {
            "id": self.id,
            "state": self.state.value,
            "initiator": self.initiator.to_dict(),
            "partner": self.partner.to_dict(),
            "initiatorOffer": [line.to_dict() for line in self.initiator_offer],
            "partnerOffer": [line.to_dict() for line in self.partner_offer],
            "initiatorConfirmed": self.initiator_confirmed,
            "partnerConfirmed": self.partner_confirmed,
            "listingItemId": self.listing_item_id,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "endReason": self.end_reason,
        }


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "LiveTradeErrorCode",
    "LiveTradeError",
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
    "OfferSide",
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    "IDLE_CANCELLABLE_STATES",
    "validate_transition",
    "is_terminal_state",
    "UserRef",
    "OfferLine",
    "TradeSession",
    "generate_trade_id",
]
