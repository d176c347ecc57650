"""
============================================================================
BarterBay Live Trade - Trade Session State Machine
============================================================================

Reliability Level: L6 Critical
Traceability: All operations log the trade_id they act on

This module owns the per-session negotiation logic:
- invite / accept / decline
- add_item / remove_item with inventory validation
- confirm and the atomic commit
- cancel, disconnect and idle-timeout cancellation

SERIALIZATION:
    Every mutating operation takes the session's lock, re-checks the state
    under it, mutates, and emits its events before releasing it. Events of
    one session therefore leave in the same order as the mutations that
    caused them.

    The commit runs inside the same lock. A cancel or disconnect racing a
    commit waits for it and then finds a terminal session, so committing is
    final and a session is never observed stuck in COMMITTING.

    Notifications (which may write to the database) are queued under the
    lock and handed to the NotificationService after it is released.

COMMIT OUTCOMES:
    - check_and_transfer succeeded -> COMPLETED, trade_completed to both,
      one notification per participant
    - check_and_transfer rejected  -> FAILED, trade_failed (CommitConflict)
    - check_and_transfer raised    -> FAILED, trade_failed (InternalError)

============================================================================
"""

from typing import Optional, Dict, Any, List
from datetime import datetime
import logging
import time

from app.observability.metrics import (
    record_commit_duration,
    record_session_created,
    record_session_finished,
)
from services.connection_manager import ConnectionManager
from services.inventory_store import (
    InventoryStore,
    TradeRecordContext,
    Transfer,
    TransferResult,
)
from services.live_trade_config import LiveTradeConfig
from services.live_trade_models import (
    IDLE_CANCELLABLE_STATES,
    InvalidState,
    ItemUnavailable,
    LiveTradeErrorCode,
    MalformedMessage,
    NotAParticipant,
    OfferLine,
    PartnerOffline,
    SessionNotFound,
    TradeSession,
    TradeState,
    UserRef,
    validate_transition,
)
from services.notification_service import NotificationService
from services.trade_session_registry import TradeSessionRegistry

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# End Reasons
# =============================================================================

class EndReason:
    """Values of TradeSession.end_reason and trade_cancelled.reason."""
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DECLINED = "declined"
    DISCONNECTED = "disconnected"
    TIMEOUT = "timeout"


def _details_for(user_id: int, details: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Failed lines as shown to one participant; counterpart holdings stay private."""
    return [
        line if line.get("userId") == user_id
        else {key: value for key, value in line.items() if key != "available"}
        for line in details
    ]


# =============================================================================
# LiveTradeStateMachine
# =============================================================================

class LiveTradeStateMachine:
    """
    Live-trade session logic.

    The state machine never touches transport objects: it addresses users
    through the ConnectionManager and items through the InventoryStore.

    Reliability Level: L6 Critical
    """

    def __init__(
        self,
        registry: TradeSessionRegistry,
        connections: ConnectionManager,
        inventory: InventoryStore,
        notifier: Optional[NotificationService] = None,
        config: Optional[LiveTradeConfig] = None,
    ) -> None:
        self._registry = registry
        self._connections = connections
        self._inventory = inventory
        self._notifier = notifier
        self._config = config or LiveTradeConfig()

    @property
    def config(self) -> LiveTradeConfig:
        return self._config

    # =========================================================================
    # Invitation
    # =========================================================================

    def invite(
        self,
        sender: UserRef,
        target: UserRef,
        listing_item_id: Optional[int] = None,
    ) -> TradeSession:
        """
        Open a session in INVITED state.

        Reliability Level: L6 Critical
        Input Constraints: sender and target differ
        Side Effects: Registry insert, trade_invite_received to the target
            (if connected), trade_invite_sent to the sender, notification

        Raises:
            PartnerOffline: Online-partner policy enabled and target offline
            AlreadyInSession: Either user already trades
            InvalidState: Self-trade
        """
        if (
            self._config.require_online_partner
            and sender.id != target.id
            and not self._connections.is_connected(target.id)
        ):
            raise PartnerOffline(f"{target.username} is not online")

        session = self._registry.create_session(sender, target, listing_item_id)
        record_session_created(session.id)

        with session.lock:
            invite_event = {
                "type": "trade_invite_received",
                "tradeId": session.id,
                "from": sender.to_dict(),
                "listingItemId": listing_item_id,
            }
            delivered = self._connections.send(target.id, invite_event)
            self._connections.send(sender.id, {
                "type": "trade_invite_sent",
                "tradeId": session.id,
                "to": target.to_dict(),
                "listingItemId": listing_item_id,
                "partnerOnline": delivered,
            })
            self._queue_notification(session, target.id, invite_event)

        self._deliver_notifications(session)

        logger.info(
            f"[LIVE-TRADE] Invite sent | "
            f"trade_id={session.id} | "
            f"initiator={sender.id} | "
            f"partner={target.id} | "
            f"delivered={delivered}"
        )
        return session

    def accept(self, user_id: int, trade_id: str) -> TradeSession:
        """
        INVITED -> NEGOTIATING. Only the invited partner may accept.

        Raises:
            SessionNotFound, NotAParticipant, InvalidState
        """
        session = self._load(trade_id, user_id)
        with session.lock:
            self._require_state(session, TradeState.INVITED, "accept")
            self._require_partner(session, user_id, "accept")

            self._transition(session, TradeState.NEGOTIATING)
            for participant_id in session.participant_ids():
                self._connections.send(participant_id, {
                    "type": "trade_started",
                    "tradeId": session.id,
                    "trade": session.view_for(participant_id),
                })

        logger.info(
            f"[LIVE-TRADE] Trade accepted | "
            f"trade_id={session.id} | "
            f"partner={user_id}"
        )
        return session

    def decline(self, user_id: int, trade_id: str) -> TradeSession:
        """
        INVITED -> CANCELLED. Only the invited partner may decline.

        Raises:
            SessionNotFound, NotAParticipant, InvalidState
        """
        session = self._load(trade_id, user_id)
        with session.lock:
            self._require_state(session, TradeState.INVITED, "decline")
            self._require_partner(session, user_id, "decline")

            self._finish(session, TradeState.CANCELLED, EndReason.DECLINED)
            self._connections.send(session.initiator.id, {
                "type": "trade_declined",
                "tradeId": session.id,
                "by": session.partner.to_dict(),
                "message": f"{session.partner.username} declined the trade",
            })

        logger.info(
            f"[LIVE-TRADE] Trade declined | "
            f"trade_id={session.id} | "
            f"partner={user_id}"
        )
        return session

    # =========================================================================
    # Offer Editing
    # =========================================================================

    def add_item(
        self,
        user_id: int,
        trade_id: str,
        item_id: int,
        quantity: int = 1,
    ) -> TradeSession:
        """
        Add units of an item to the sender's own offer.

        An item already offered by the same side has its quantity increased
        instead of getting a second line. The total offered must stay within
        the sender's holding minus what other active sessions reserve.

        Raises:
            MalformedMessage: quantity < 1
            ItemUnavailable: Not owned, not tradeable, or not enough units
            SessionNotFound, NotAParticipant, InvalidState
        """
        if quantity < 1:
            raise MalformedMessage(
                f"quantity must be a positive integer, got: {quantity}",
                trade_id=trade_id,
            )

        session = self._load(trade_id, user_id)
        with session.lock:
            self._require_state(session, TradeState.NEGOTIATING, "add items")

            holding = self._inventory.get_holding(user_id, item_id)
            if holding is None:
                raise ItemUnavailable(
                    f"You do not own item {item_id}",
                    trade_id=session.id,
                )
            if not holding.tradeable:
                raise ItemUnavailable(
                    f"Item {item_id} is not tradeable",
                    trade_id=session.id,
                )

            offered = session.offered_quantity(user_id, item_id)
            reserved = self._registry.reserved_quantity(
                user_id, item_id, exclude_session_id=session.id
            )
            available = holding.quantity - reserved
            if offered + quantity > available:
                raise ItemUnavailable(
                    f"Only {max(available - offered, 0)} more of item "
                    f"{item_id} available",
                    trade_id=session.id,
                )

            lines: List[OfferLine] = []
            merged = False
            for line in session.offer_of(user_id):
                if line.item_id == item_id:
                    lines.append(line.with_quantity(line.quantity + quantity))
                    merged = True
                else:
                    lines.append(line)
            if not merged:
                lines.append(OfferLine(
                    item_id=item_id,
                    quantity=quantity,
                    name=holding.name,
                    image_url=holding.image_url,
                ))

            session.set_offer(user_id, lines)
            session.reset_confirmations()
            session.touch()
            self._broadcast_update(session)

        logger.info(
            f"[LIVE-TRADE] Item added | "
            f"trade_id={session.id} | "
            f"user_id={user_id} | "
            f"item_id={item_id} | "
            f"quantity={quantity}"
        )
        return session

    def remove_item(
        self,
        user_id: int,
        trade_id: str,
        item_id: int,
        quantity: Optional[int] = None,
    ) -> TradeSession:
        """
        Remove units of an item from the sender's own offer.

        quantity=None removes the whole line. Removing more than offered
        clamps at zero and drops the line. Removing an item that is not
        offered changes nothing but still re-broadcasts the offer state.

        Raises:
            MalformedMessage: quantity < 1
            SessionNotFound, NotAParticipant, InvalidState
        """
        if quantity is not None and quantity < 1:
            raise MalformedMessage(
                f"quantity must be a positive integer, got: {quantity}",
                trade_id=trade_id,
            )

        session = self._load(trade_id, user_id)
        with session.lock:
            self._require_state(session, TradeState.NEGOTIATING, "remove items")

            current = session.offer_of(user_id)
            lines: List[OfferLine] = []
            changed = False
            for line in current:
                if line.item_id != item_id:
                    lines.append(line)
                    continue
                changed = True
                remaining = 0 if quantity is None else line.quantity - quantity
                if remaining > 0:
                    lines.append(line.with_quantity(remaining))

            if changed:
                session.set_offer(user_id, lines)
                session.reset_confirmations()
                session.touch()
            self._broadcast_update(session)

        logger.info(
            f"[LIVE-TRADE] Item removed | "
            f"trade_id={session.id} | "
            f"user_id={user_id} | "
            f"item_id={item_id} | "
            f"quantity={quantity} | "
            f"changed={changed}"
        )
        return session

    # =========================================================================
    # Confirmation and Commit
    # =========================================================================

    def confirm(self, user_id: int, trade_id: str) -> TradeSession:
        """
        Set the sender's confirmation flag; commit once both are set.

        Re-confirming is idempotent: the flag stays set and no second
        commit is attempted.

        Raises:
            InvalidState: Not NEGOTIATING, or both offers empty while empty
                trades are disabled
            SessionNotFound, NotAParticipant
        """
        session = self._load(trade_id, user_id)
        with session.lock:
            self._require_state(session, TradeState.NEGOTIATING, "confirm")

            if (
                not self._config.allow_empty_trade
                and not session.initiator_offer
                and not session.partner_offer
            ):
                raise InvalidState(
                    "Add at least one item before confirming",
                    trade_id=session.id,
                )

            if session.confirmed(user_id):
                logger.debug(
                    f"[LIVE-TRADE] Duplicate confirm ignored | "
                    f"trade_id={session.id} | "
                    f"user_id={user_id}"
                )
                self._connections.send(user_id, {
                    "type": "trade_updated",
                    "tradeId": session.id,
                    "trade": session.view_for(user_id),
                })
                return session

            session.set_confirmed(user_id)
            session.touch()

            logger.info(
                f"[LIVE-TRADE] Trade confirmed | "
                f"trade_id={session.id} | "
                f"user_id={user_id} | "
                f"both_confirmed={session.both_confirmed}"
            )

            if session.both_confirmed:
                self._commit(session)
            else:
                self._broadcast_update(session)

        self._deliver_notifications(session)
        return session

    def _commit(self, session: TradeSession) -> None:
        """
        Run the atomic inventory transfer. Caller holds session.lock.
        """
        self._transition(session, TradeState.COMMITTING)

        transfers = [
            Transfer(
                from_user_id=session.initiator.id,
                to_user_id=session.partner.id,
                item_id=line.item_id,
                quantity=line.quantity,
            )
            for line in session.initiator_offer
        ] + [
            Transfer(
                from_user_id=session.partner.id,
                to_user_id=session.initiator.id,
                item_id=line.item_id,
                quantity=line.quantity,
            )
            for line in session.partner_offer
        ]
        context = TradeRecordContext(
            trade_id=session.id,
            sender_id=session.initiator.id,
            receiver_id=session.partner.id,
        )

        logger.info(
            f"[LIVE-TRADE] Committing | "
            f"trade_id={session.id} | "
            f"lines={len(transfers)}"
        )

        started = time.monotonic()
        try:
            if transfers:
                result = self._inventory.check_and_transfer(transfers, context)
            else:
                result = TransferResult(success=True)
        except Exception as e:
            record_commit_duration(time.monotonic() - started, session.id)
            logger.error(
                f"[{LiveTradeErrorCode.INTERNAL_ERROR}] Inventory commit raised | "
                f"trade_id={session.id} | "
                f"error={str(e)}",
                exc_info=True,
            )
            self._fail(
                session,
                LiveTradeErrorCode.INTERNAL_ERROR,
                "The trade could not be completed. No items were moved.",
            )
            return

        record_commit_duration(time.monotonic() - started, session.id)

        if result.success:
            self._complete(session, result)
        else:
            self._fail(
                session,
                LiveTradeErrorCode.COMMIT_CONFLICT,
                "Some offered items are no longer available. No items were moved.",
                result.failed_lines,
            )

    def _complete(self, session: TradeSession, result: TransferResult) -> None:
        self._finish(session, TradeState.COMPLETED, EndReason.COMPLETED)

        for participant_id in session.participant_ids():
            event = {
                "type": "trade_completed",
                "tradeId": session.id,
                "tradeRecordId": result.trade_record_id,
                "message": "Trade completed successfully!",
                "partner": session.counterpart_of(participant_id).to_dict(),
                "trade": session.view_for(participant_id),
            }
            self._connections.send(participant_id, event)
            self._queue_notification(session, participant_id, event)

        logger.info(
            f"[LIVE-TRADE] Trade completed | "
            f"trade_id={session.id} | "
            f"initiator={session.initiator.id} | "
            f"partner={session.partner.id} | "
            f"trade_record_id={result.trade_record_id}"
        )

    def _fail(
        self,
        session: TradeSession,
        reason: str,
        message: str,
        details: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        self._finish(session, TradeState.FAILED, reason)

        for participant_id in session.participant_ids():
            self._connections.send(participant_id, {
                "type": "trade_failed",
                "tradeId": session.id,
                "reason": reason,
                "message": message,
                "details": _details_for(participant_id, details or []),
            })

        logger.warning(
            f"[LIVE-TRADE] Trade failed | "
            f"trade_id={session.id} | "
            f"reason={reason} | "
            f"failed_lines={len(details or [])}"
        )

    # =========================================================================
    # Cancellation
    # =========================================================================

    def cancel(self, user_id: int, trade_id: str) -> TradeSession:
        """
        Cancel any non-terminal session at a participant's request.

        Raises:
            SessionNotFound, NotAParticipant, InvalidState
        """
        session = self._load(trade_id, user_id)
        with session.lock:
            if session.is_terminal or session.state is TradeState.COMMITTING:
                raise InvalidState(
                    f"Cannot cancel while trade is {session.state.value}",
                    trade_id=session.id,
                )

            canceller = (
                session.initiator if user_id == session.initiator.id
                else session.partner
            )
            self._finish(session, TradeState.CANCELLED, EndReason.CANCELLED)

            event = {
                "type": "trade_cancelled",
                "tradeId": session.id,
                "reason": EndReason.CANCELLED,
                "cancelledBy": canceller.to_dict(),
                "message": f"Trade cancelled by {canceller.username}",
            }
            for participant_id in session.participant_ids():
                self._connections.send(participant_id, event)

        logger.info(
            f"[LIVE-TRADE] Trade cancelled | "
            f"trade_id={session.id} | "
            f"cancelled_by={user_id}"
        )
        return session

    def handle_disconnect(self, user_id: int) -> bool:
        """
        Cancel the user's active session after their socket went away.

        Returns:
            True if a session was cancelled
        """
        session = self._registry.get_active_session_for_user(user_id)
        if session is None:
            return False

        with session.lock:
            if session.is_terminal or session.state is TradeState.COMMITTING:
                return False

            leaver = session.initiator if user_id == session.initiator.id else session.partner
            remaining = session.counterpart_of(user_id)
            self._finish(session, TradeState.CANCELLED, EndReason.DISCONNECTED)

            self._connections.send(remaining.id, {
                "type": "trade_cancelled",
                "tradeId": session.id,
                "reason": EndReason.DISCONNECTED,
                "cancelledBy": leaver.to_dict(),
                "message": f"{leaver.username} disconnected",
            })

        logger.info(
            f"[LIVE-TRADE] Trade cancelled on disconnect | "
            f"trade_id={session.id} | "
            f"user_id={user_id}"
        )
        return True

    def expire_idle_sessions(self, now: Optional[datetime] = None) -> int:
        """
        Cancel INVITED/NEGOTIATING sessions idle past the configured timeout.

        Returns:
            Number of sessions cancelled
        """
        if not self._config.idle_timeout_enabled:
            return 0

        timeout = self._config.idle_timeout_seconds
        expired = 0

        for session in self._registry.active_sessions():
            with session.lock:
                if session.state not in IDLE_CANCELLABLE_STATES:
                    continue
                if session.idle_seconds(now) < timeout:
                    continue

                previous_state = session.state
                self._finish(session, TradeState.CANCELLED, EndReason.TIMEOUT, now)

                event = {
                    "type": "trade_cancelled",
                    "tradeId": session.id,
                    "reason": EndReason.TIMEOUT,
                    "cancelledBy": None,
                    "message": "Trade expired after inactivity",
                }
                for participant_id in session.participant_ids():
                    self._connections.send(participant_id, event)

            expired += 1
            logger.info(
                f"[LIVE-TRADE] Idle trade expired | "
                f"trade_id={session.id} | "
                f"previous_state={previous_state.value} | "
                f"timeout_seconds={timeout}"
            )

        return expired

    # =========================================================================
    # Internal Helpers
    # =========================================================================

    def _load(self, trade_id: str, user_id: int) -> TradeSession:
        session = self._registry.get_session(trade_id)
        if session is None:
            raise SessionNotFound("Trade session not found", trade_id=trade_id)
        if not session.is_participant(user_id):
            raise NotAParticipant(
                "You are not a participant of this trade",
                trade_id=trade_id,
            )
        return session

    def _require_state(
        self,
        session: TradeSession,
        expected: TradeState,
        action: str,
    ) -> None:
        if session.state is not expected:
            raise InvalidState(
                f"Cannot {action} while trade is {session.state.value}",
                trade_id=session.id,
            )

    def _require_partner(self, session: TradeSession, user_id: int, action: str) -> None:
        if user_id != session.partner.id:
            raise InvalidState(
                f"Only the invited user can {action} this trade",
                trade_id=session.id,
            )

    def _transition(self, session: TradeSession, target: TradeState) -> None:
        ok, error_code = validate_transition(session.state, target, session.id)
        if not ok:
            raise InvalidState(
                f"Cannot move trade from {session.state.value} to {target.value}",
                trade_id=session.id,
            )
        session.state = target
        session.touch()

    def _finish(
        self,
        session: TradeSession,
        target: TradeState,
        reason: str,
        now: Optional[datetime] = None,
    ) -> None:
        self._transition(session, target)
        session.ended_at = session.updated_at
        session.end_reason = reason
        self._registry.retire_session(
            session.id,
            grace_seconds=self._config.terminal_grace_seconds,
            now=now,
        )
        record_session_finished(target.value, session.id)

    def _broadcast_update(self, session: TradeSession) -> None:
        for participant_id in session.participant_ids():
            self._connections.send(participant_id, {
                "type": "trade_updated",
                "tradeId": session.id,
                "trade": session.view_for(participant_id),
            })

    def _queue_notification(
        self,
        session: TradeSession,
        user_id: int,
        event: Dict[str, Any],
    ) -> None:
        """Caller holds session.lock."""
        if self._notifier is not None:
            session.pending_notifications.append((user_id, event))

    def _deliver_notifications(self, session: TradeSession) -> None:
        """
        Hand queued notifications to the notifier. Must run without
        session.lock held: persistence may block on the database.
        """
        with session.lock:
            pending = session.pending_notifications
            session.pending_notifications = []
        for user_id, event in pending:
            self._notify(user_id, event)

    def _notify(self, user_id: int, event: Dict[str, Any]) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier.notify(user_id, event)
        except Exception as e:
            logger.error(
                f"[LIVE-TRADE] Notification failed | "
                f"user_id={user_id} | "
                f"event_type={event.get('type')} | "
                f"error={str(e)}"
            )


__all__ = [
    "EndReason",
    "LiveTradeStateMachine",
]
