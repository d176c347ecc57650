"""
============================================================================
BarterBay Live Trade - Trade Session Registry
============================================================================

Reliability Level: L6 Critical
Input Constraints: Sessions are created only through create_session()
Side Effects: In-memory bookkeeping only

Process-wide table of live-trade sessions. It is the only globally shared
mutable structure of the live-trade core, so every access goes through the
registry's own lock and the raw maps are never handed out.

INDEXES:
    - session id -> TradeSession
    - user id    -> session id (non-terminal sessions only)
    - session id -> purge deadline (terminal sessions kept for a grace period)

LOCK ORDER:
    A caller may hold a session lock while calling into the registry. The
    registry never acquires a session lock, so the order is always
    session -> registry.

============================================================================
"""

from typing import Optional, Dict, Any, List
from datetime import datetime, timezone, timedelta
import logging
import threading

from services.live_trade_models import (
    AlreadyInSession,
    InvalidState,
    TradeSession,
    UserRef,
    generate_trade_id,
)

# Configure module logger
logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# TradeSessionRegistry
# =============================================================================

class TradeSessionRegistry:
    """
    Synchronized registry of live-trade sessions.

    Enforces the one-active-session-per-user invariant at creation time.

    Reliability Level: L6 Critical
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: Dict[str, TradeSession] = {}
        self._user_index: Dict[int, str] = {}
        self._retired: Dict[str, datetime] = {}

    # -------------------------------------------------------------------------
    # Creation and lookup
    # -------------------------------------------------------------------------

    def create_session(
        self,
        initiator: UserRef,
        partner: UserRef,
        listing_item_id: Optional[int] = None,
    ) -> TradeSession:
        """
        Allocate a new session in INVITED state.

        Reliability Level: L6 Critical
        Input Constraints: initiator and partner must be different users
        Side Effects: Indexes the session by id and by both participant ids

        Raises:
            InvalidState: Self-trade
            AlreadyInSession: Either user already has a non-terminal session
        """
        if initiator.id == partner.id:
            raise InvalidState("Cannot start a trade with yourself")

        with self._lock:
            for user in (initiator, partner):
                existing = self._active_for_user_locked(user.id)
                if existing is not None:
                    who = "You are" if user.id == initiator.id else f"{user.username} is"
                    raise AlreadyInSession(
                        f"{who} already in a live trade",
                        trade_id=existing.id if user.id == initiator.id else None,
                    )

            session = TradeSession(
                id=generate_trade_id(),
                initiator=initiator,
                partner=partner,
                listing_item_id=listing_item_id,
            )
            self._sessions[session.id] = session
            self._user_index[initiator.id] = session.id
            self._user_index[partner.id] = session.id

        logger.info(
            f"[REGISTRY] Session created | "
            f"trade_id={session.id} | "
            f"initiator={initiator.id} | "
            f"partner={partner.id}"
        )
        return session

    def get_session(self, session_id: str) -> Optional[TradeSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def get_active_session_for_user(self, user_id: int) -> Optional[TradeSession]:
        with self._lock:
            return self._active_for_user_locked(user_id)

    def _active_for_user_locked(self, user_id: int) -> Optional[TradeSession]:
        session_id = self._user_index.get(user_id)
        if session_id is None:
            return None
        session = self._sessions.get(session_id)
        if session is None or session.is_terminal:
            # Stale index entry; the session ended without being retired
            self._user_index.pop(user_id, None)
            return None
        return session

    # -------------------------------------------------------------------------
    # Removal
    # -------------------------------------------------------------------------

    def remove_session(self, session_id: str) -> bool:
        """
        Remove a terminal session from every index.

        Returns:
            True if the session was present

        Raises:
            InvalidState: The session has not reached a terminal state
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            if not session.is_terminal:
                raise InvalidState(
                    f"Session is still {session.state.value}",
                    trade_id=session_id,
                )
            self._drop_locked(session)

        logger.debug(f"[REGISTRY] Session removed | trade_id={session_id}")
        return True

    def retire_session(
        self,
        session_id: str,
        grace_seconds: int = 0,
        now: Optional[datetime] = None,
    ) -> None:
        """
        Release a terminal session.

        Both participants are unindexed immediately so they can start new
        trades. With a grace period the session stays reachable by id until
        purge_retired() passes its deadline; otherwise it is removed now.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return
            if not session.is_terminal:
                raise InvalidState(
                    f"Session is still {session.state.value}",
                    trade_id=session_id,
                )

            if grace_seconds <= 0:
                self._drop_locked(session)
            else:
                self._unindex_users_locked(session)
                self._retired[session_id] = (now or _utc_now()) + timedelta(
                    seconds=grace_seconds
                )

        logger.info(
            f"[REGISTRY] Session retired | "
            f"trade_id={session_id} | "
            f"state={session.state.value} | "
            f"grace_seconds={grace_seconds}"
        )

    def purge_retired(self, now: Optional[datetime] = None) -> int:
        """
        Drop retired sessions whose grace period has elapsed.

        Returns:
            Number of sessions purged
        """
        now = now or _utc_now()
        purged = 0
        with self._lock:
            for session_id, deadline in list(self._retired.items()):
                if deadline > now:
                    continue
                session = self._sessions.get(session_id)
                if session is not None:
                    self._drop_locked(session)
                else:
                    self._retired.pop(session_id, None)
                purged += 1

        if purged:
            logger.info(f"[REGISTRY] Purged retired sessions | count={purged}")
        return purged

    def _unindex_users_locked(self, session: TradeSession) -> None:
        for user_id in session.participant_ids():
            if self._user_index.get(user_id) == session.id:
                del self._user_index[user_id]

    def _drop_locked(self, session: TradeSession) -> None:
        self._unindex_users_locked(session)
        self._sessions.pop(session.id, None)
        self._retired.pop(session.id, None)

    # -------------------------------------------------------------------------
    # Enumeration
    # -------------------------------------------------------------------------

    def active_sessions(self) -> List[TradeSession]:
        """Snapshot of every non-terminal session."""
        with self._lock:
            return [s for s in self._sessions.values() if not s.is_terminal]

    def reserved_quantity(
        self,
        user_id: int,
        item_id: int,
        exclude_session_id: Optional[str] = None,
    ) -> int:
        """
        Units of an item the user has pledged in other active sessions.

        Offer lists are replaced wholesale on every mutation, so reading them
        without the session lock always yields a complete snapshot.
        """
        with self._lock:
            candidates = [
                s for s in self._sessions.values()
                if s.id != exclude_session_id
                and not s.is_terminal
                and s.is_participant(user_id)
            ]
        return sum(s.offered_quantity(user_id, item_id) for s in candidates)

    @property
    def active_count(self) -> int:
        with self._lock:
            return sum(1 for s in self._sessions.values() if not s.is_terminal)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            states: Dict[str, int] = {}
            for session in self._sessions.values():
                states[session.state.value] = states.get(session.state.value, 0) + 1
            return {
                "total_sessions": len(self._sessions),
                "active_sessions": sum(
                    1 for s in self._sessions.values() if not s.is_terminal
                ),
                "retired_sessions": len(self._retired),
                "indexed_users": len(self._user_index),
                "sessions_by_state": states,
            }


__all__ = [
    "TradeSessionRegistry",
]
