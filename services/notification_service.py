"""
============================================================================
BarterBay Live Trade - Notification Service
============================================================================

Reliability Level: L5 High
Traceability: Every notification carries the tradeId it relates to

This module implements the downstream notification collaborator:
- notify(user_id, event): fire-and-forget, never raises into the caller
- Optional persistence of a row in the `notifications` table
- Fan-out to registered subscribers; SocketNotificationSubscriber pushes
  a new_notification frame to the recipient's live socket
- Per-type counters reported on the status endpoint

NOTIFICATION TYPES:
    - trade_invite_received: "Live Trade Request" for the invited partner
    - trade_completed: "Live Trade Completed", one per participant

Persisted rows use type 'Trade' and related_id = tradeId.

============================================================================
"""

from typing import Optional, Dict, Any, List, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
import logging
import threading

from sqlalchemy import insert
from sqlalchemy.orm import Session

from app.database.models import notifications_table
from services.connection_manager import ConnectionManager

# Configure module logger
logger = logging.getLogger(__name__)


NOTIFICATION_CATEGORY = "Trade"

_TITLES: Dict[str, str] = {
    "trade_invite_received": "Live Trade Request",
    "trade_completed": "Live Trade Completed",
}


# =============================================================================
# Notification Data Class
# =============================================================================

@dataclass
class TradeNotification:
    """One notification addressed to one user."""
    user_id: int
    event_type: str
    title: str
    message: str
    related_id: Optional[str]
    payload: Dict[str, Any]
    created_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    @classmethod
    def from_event(cls, user_id: int, event: Dict[str, Any]) -> "TradeNotification":
        event_type = str(event.get("type", "unknown"))
        return cls(
            user_id=user_id,
            event_type=event_type,
            title=_TITLES.get(event_type, "Live Trade"),
            message=_describe(event),
            related_id=event.get("tradeId"),
            payload=dict(event),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "type": self.event_type,
            "title": self.title,
            "message": self.message,
            "relatedId": self.related_id,
            "payload": self.payload,
            "createdAt": self.created_at,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(',', ':'), default=str)


def _describe(event: Dict[str, Any]) -> str:
    event_type = event.get("type")
    if event_type == "trade_invite_received":
        sender = (event.get("from") or {}).get("username", "Someone")
        return f"{sender} wants to start a live trade with you"
    if event_type == "trade_completed":
        partner = (event.get("partner") or {}).get("username", "your partner")
        return f"Your live trade with {partner} was completed"
    return str(event.get("message") or event_type)


# =============================================================================
# NotificationService Class
# =============================================================================

class NotificationService:
    """
    Fire-and-forget notification fan-out.

    ============================================================================
    RESPONSIBILITIES:
    ============================================================================
    1. Build a TradeNotification from a live-trade event
    2. Persist it when a session factory is configured
    3. Deliver it to every subscriber (emit / send / on_event)
    4. Count notifications per event type
    ============================================================================

    THREAD SAFETY:
        All operations are thread-safe using locks. notify() may block on
        the database insert, so callers invoke it outside session locks.

    Reliability Level: L5 High
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        enable_logging: bool = True,
    ) -> None:
        self._session_factory = session_factory
        self._enable_logging = enable_logging

        self._subscribers: List[Any] = []
        self._subscribers_lock = threading.Lock()

        self._event_counts: Dict[str, int] = {}
        self._counts_lock = threading.Lock()

        logger.info(
            f"[NOTIFY] Initialized | "
            f"persistence={'on' if session_factory else 'off'}"
        )

    # =========================================================================
    # Subscriber Management
    # =========================================================================

    def add_subscriber(self, subscriber: Any) -> bool:
        """
        Add a subscriber.

        Args:
            subscriber: Object with emit(), send(), or on_event() method

        Returns:
            True if the subscriber was added
        """
        has_emit = callable(getattr(subscriber, 'emit', None))
        has_send = callable(getattr(subscriber, 'send', None))
        has_on_event = callable(getattr(subscriber, 'on_event', None))

        if not (has_emit or has_send or has_on_event):
            logger.warning(
                f"[NOTIFY] Invalid subscriber - no emit/send/on_event method | "
                f"subscriber_type={type(subscriber).__name__}"
            )
            return False

        with self._subscribers_lock:
            if subscriber in self._subscribers:
                return False
            self._subscribers.append(subscriber)
            logger.info(
                f"[NOTIFY] Subscriber added | "
                f"subscriber_type={type(subscriber).__name__} | "
                f"total_subscribers={len(self._subscribers)}"
            )
            return True

    def get_subscriber_count(self) -> int:
        with self._subscribers_lock:
            return len(self._subscribers)

    # =========================================================================
    # Core Notify
    # =========================================================================

    def notify(self, user_id: int, event: Dict[str, Any]) -> None:
        """
        Deliver a notification for one user.

        Fire-and-forget: every failure is logged and swallowed here so the
        caller's trade flow is never affected.

        Side Effects: Database insert (optional), subscriber calls
        """
        try:
            notification = TradeNotification.from_event(user_id, event)
        except Exception as e:
            logger.error(
                f"[NOTIFY] Could not build notification | "
                f"user_id={user_id} | "
                f"error={str(e)}"
            )
            return

        if self._session_factory is not None:
            self._persist(notification)

        delivered = self._broadcast(notification)
        self._increment_counter(notification.event_type)

        if self._enable_logging:
            logger.info(
                f"[NOTIFY] Notification sent | "
                f"user_id={user_id} | "
                f"type={notification.event_type} | "
                f"trade_id={notification.related_id} | "
                f"subscribers_notified={delivered}"
            )

    def _persist(self, notification: TradeNotification) -> None:
        session = self._session_factory()
        try:
            session.execute(
                insert(notifications_table).values(
                    user_id=notification.user_id,
                    type=NOTIFICATION_CATEGORY,
                    title=notification.title,
                    message=notification.message,
                    related_id=notification.related_id,
                    is_read=False,
                )
            )
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(
                f"[NOTIFY] Failed to persist notification | "
                f"user_id={notification.user_id} | "
                f"trade_id={notification.related_id} | "
                f"error={str(e)}"
            )
        finally:
            session.close()

    def _broadcast(self, notification: TradeNotification) -> int:
        with self._subscribers_lock:
            subscribers = self._subscribers.copy()

        notified = 0
        for subscriber in subscribers:
            try:
                if callable(getattr(subscriber, 'emit', None)):
                    subscriber.emit(notification.event_type, notification.to_dict())
                elif callable(getattr(subscriber, 'send', None)):
                    subscriber.send(notification.to_json())
                elif callable(getattr(subscriber, 'on_event', None)):
                    subscriber.on_event(notification)
                else:
                    continue
                notified += 1
            except Exception as e:
                logger.error(
                    f"[NOTIFY] Failed to notify subscriber | "
                    f"subscriber_type={type(subscriber).__name__} | "
                    f"type={notification.event_type} | "
                    f"error={str(e)}"
                )
        return notified

    # =========================================================================
    # Statistics
    # =========================================================================

    def _increment_counter(self, event_type: str) -> None:
        with self._counts_lock:
            self._event_counts[event_type] = self._event_counts.get(event_type, 0) + 1

    def get_event_counts(self) -> Dict[str, int]:
        with self._counts_lock:
            return dict(self._event_counts)

    def get_status(self) -> Dict[str, Any]:
        return {
            "persistence": self._session_factory is not None,
            "subscribers": self.get_subscriber_count(),
            "sent": self.get_event_counts(),
        }


# =============================================================================
# Socket Delivery
# =============================================================================

class SocketNotificationSubscriber:
    """
    Pushes each notification to its recipient's live-trade socket as
    {"type": "new_notification", "data": {...}}. Offline recipients keep
    only the persisted row.
    """

    def __init__(self, connections: ConnectionManager) -> None:
        self._connections = connections

    def on_event(self, notification: TradeNotification) -> None:
        delivered = self._connections.send(notification.user_id, {
            "type": "new_notification",
            "data": notification.to_dict(),
        })
        if not delivered:
            logger.debug(
                f"[NOTIFY] Recipient offline, socket push skipped | "
                f"user_id={notification.user_id} | "
                f"type={notification.event_type}"
            )


__all__ = [
    "NOTIFICATION_CATEGORY",
    "TradeNotification",
    "NotificationService",
    "SocketNotificationSubscriber",
]
