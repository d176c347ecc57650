"""
============================================================================
BarterBay Live Trade - Inventory Store
============================================================================

Reliability Level: L6 Critical
Traceability: Every commit is tagged with the trade_id that requested it

The inventory store is the authority on who owns what. The live-trade core
depends on exactly two operations:

    get_holding(user_id, item_id)
        Advisory read used to validate add_item requests. The answer may be
        stale by the time the trade commits.

    check_and_transfer(transfers, context)
        ONE atomic, all-or-nothing operation: verify every (owner, item)
        line is still covered by the owner's holdings and apply every line,
        or apply nothing. The session layer never assumes availability is
        stable between two calls; only this call is authoritative.

IMPLEMENTATIONS:
    - InMemoryInventoryStore: single lock around a dict; tests and dev
    - SqlInventoryStore: SQLAlchemy Core, one transaction with row locks

============================================================================
"""

from typing import Optional, Dict, Any, List, Tuple, Callable
from dataclasses import dataclass, field
from collections import OrderedDict, defaultdict
from datetime import datetime, timezone
import logging
import threading
import uuid

from sqlalchemy import select, insert, update, delete
from sqlalchemy.orm import Session

from app.database.models import (
    items_table,
    inventories_table,
    trades_table,
    trade_items_table,
)

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Failure Reasons
# =============================================================================

class TransferFailureReason:
    """Per-line failure reasons reported in TransferResult.failed_lines."""
    INSUFFICIENT_QUANTITY = "INSUFFICIENT_QUANTITY"
    NOT_TRADEABLE = "NOT_TRADEABLE"
    INVALID_LINE = "INVALID_LINE"


# =============================================================================
# Data Classes
# =============================================================================

@dataclass(frozen=True)
class Holding:
    """A user's current holding of one item."""
    user_id: int
    item_id: int
    quantity: int
    tradeable: bool = True
    name: Optional[str] = None
    image_url: Optional[str] = None


@dataclass(frozen=True)
class Transfer:
    """Move `quantity` units of `item_id` from one user to another."""
    from_user_id: int
    to_user_id: int
    item_id: int
    quantity: int


@dataclass(frozen=True)
class TradeRecordContext:
    """
    Identifies the trade a commit belongs to.

    sender_id is the initiator; transfers originating from the sender are
    recorded as offered_by='Sender', the rest as 'Receiver'.
    """
    trade_id: str
    sender_id: int
    receiver_id: int


@dataclass
class TransferResult:
    """Outcome of check_and_transfer()."""
    success: bool
    reason: Optional[str] = None
    failed_lines: List[Dict[str, Any]] = field(default_factory=list)
    trade_record_id: Optional[str] = None


# =============================================================================
# Helpers
# =============================================================================

def aggregate_transfers(transfers: List[Transfer]) -> List[Transfer]:
    """
    Merge lines sharing (from_user, to_user, item) so each owner's total
    commitment per item is checked once. Order of first appearance is kept.
    """
    totals: "OrderedDict[Tuple[int, int, int], int]" = OrderedDict()
    for transfer in transfers:
        key = (transfer.from_user_id, transfer.to_user_id, transfer.item_id)
        totals[key] = totals.get(key, 0) + transfer.quantity
    return [
        Transfer(from_user_id=f, to_user_id=t, item_id=i, quantity=q)
        for (f, t, i), q in totals.items()
    ]


def _invalid_lines(transfers: List[Transfer]) -> List[Dict[str, Any]]:
    failures = []
    for transfer in transfers:
        if transfer.quantity <= 0 or transfer.from_user_id == transfer.to_user_id:
            failures.append({
                "userId": transfer.from_user_id,
                "itemId": transfer.item_id,
                "requested": transfer.quantity,
                "available": None,
                "reason": TransferFailureReason.INVALID_LINE,
            })
    return failures


def _net_deltas(transfers: List[Transfer]) -> Dict[Tuple[int, int], int]:
    deltas: Dict[Tuple[int, int], int] = defaultdict(int)
    for transfer in transfers:
        deltas[(transfer.from_user_id, transfer.item_id)] -= transfer.quantity
        deltas[(transfer.to_user_id, transfer.item_id)] += transfer.quantity
    return deltas


def _outgoing_totals(transfers: List[Transfer]) -> Dict[Tuple[int, int], int]:
    totals: Dict[Tuple[int, int], int] = defaultdict(int)
    for transfer in transfers:
        totals[(transfer.from_user_id, transfer.item_id)] += transfer.quantity
    return totals


def _offered_by(transfer: Transfer, context: Optional[TradeRecordContext]) -> str:
    if context is not None and transfer.from_user_id == context.receiver_id:
        return "Receiver"
    return "Sender"


# =============================================================================
# InventoryStore Base
# =============================================================================

class InventoryStore:
    """
    Contract consumed by the trade state machine.

    Subclasses must make check_and_transfer() atomic with respect to every
    other call on the same store, across threads.
    """

    def get_holding(self, user_id: int, item_id: int) -> Optional[Holding]:
        raise NotImplementedError

    def check_and_transfer(
        self,
        transfers: List[Transfer],
        context: Optional[TradeRecordContext] = None,
    ) -> TransferResult:
        raise NotImplementedError


# =============================================================================
# InMemoryInventoryStore
# =============================================================================

@dataclass
class _ItemInfo:
    name: Optional[str] = None
    image_url: Optional[str] = None
    tradeable: bool = True


class InMemoryInventoryStore(InventoryStore):
    """
    Process-local inventory guarded by a single lock.

    Items that were never registered are treated as tradeable with no
    display metadata.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._quantities: Dict[Tuple[int, int], int] = {}
        self._items: Dict[int, _ItemInfo] = {}
        self._trade_history: List[Dict[str, Any]] = []

    # -------------------------------------------------------------------------
    # Seeding
    # -------------------------------------------------------------------------

    def register_item(
        self,
        item_id: int,
        name: Optional[str] = None,
        image_url: Optional[str] = None,
        tradeable: bool = True,
    ) -> None:
        with self._lock:
            self._items[item_id] = _ItemInfo(
                name=name, image_url=image_url, tradeable=tradeable
            )

    def set_quantity(self, user_id: int, item_id: int, quantity: int) -> None:
        if quantity < 0:
            raise ValueError(f"quantity must be >= 0, got: {quantity}")
        with self._lock:
            if quantity == 0:
                self._quantities.pop((user_id, item_id), None)
            else:
                self._quantities[(user_id, item_id)] = quantity

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def quantity_of(self, user_id: int, item_id: int) -> int:
        with self._lock:
            return self._quantities.get((user_id, item_id), 0)

    def snapshot(self) -> Dict[Tuple[int, int], int]:
        with self._lock:
            return dict(self._quantities)

    def trade_history(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._trade_history)

    def get_holding(self, user_id: int, item_id: int) -> Optional[Holding]:
        with self._lock:
            quantity = self._quantities.get((user_id, item_id), 0)
            if quantity <= 0:
                return None
            info = self._items.get(item_id, _ItemInfo())
            return Holding(
                user_id=user_id,
                item_id=item_id,
                quantity=quantity,
                tradeable=info.tradeable,
                name=info.name,
                image_url=info.image_url,
            )

    # -------------------------------------------------------------------------
    # Atomic commit
    # -------------------------------------------------------------------------

    def check_and_transfer(
        self,
        transfers: List[Transfer],
        context: Optional[TradeRecordContext] = None,
    ) -> TransferResult:
        """
        Verify and apply every transfer under one lock acquisition.

        Returns:
            TransferResult; on failure nothing was modified.
        """
        aggregated = aggregate_transfers(transfers)
        trade_id = context.trade_id if context else None

        invalid = _invalid_lines(aggregated)
        if invalid:
            return TransferResult(
                success=False,
                reason=TransferFailureReason.INVALID_LINE,
                failed_lines=invalid,
            )

        with self._lock:
            failures: List[Dict[str, Any]] = []
            for (user_id, item_id), requested in _outgoing_totals(aggregated).items():
                held = self._quantities.get((user_id, item_id), 0)
                info = self._items.get(item_id, _ItemInfo())
                if not info.tradeable:
                    failures.append({
                        "userId": user_id,
                        "itemId": item_id,
                        "requested": requested,
                        "available": held,
                        "reason": TransferFailureReason.NOT_TRADEABLE,
                    })
                elif held < requested:
                    failures.append({
                        "userId": user_id,
                        "itemId": item_id,
                        "requested": requested,
                        "available": held,
                        "reason": TransferFailureReason.INSUFFICIENT_QUANTITY,
                    })

            if failures:
                logger.warning(
                    f"[INVENTORY] Transfer rejected | "
                    f"trade_id={trade_id} | "
                    f"failed_lines={len(failures)}"
                )
                return TransferResult(
                    success=False,
                    reason=failures[0]["reason"],
                    failed_lines=failures,
                )

            for key, delta in _net_deltas(aggregated).items():
                new_quantity = self._quantities.get(key, 0) + delta
                if new_quantity <= 0:
                    self._quantities.pop(key, None)
                else:
                    self._quantities[key] = new_quantity

            record_id = trade_id or uuid.uuid4().hex
            self._trade_history.append({
                "trade_id": record_id,
                "sender_id": context.sender_id if context else None,
                "receiver_id": context.receiver_id if context else None,
                "status": "Completed",
                "is_live_trade": True,
                "items": [
                    {
                        "item_id": t.item_id,
                        "quantity": t.quantity,
                        "offered_by": _offered_by(t, context),
                    }
                    for t in aggregated
                ],
                "created_at": datetime.now(timezone.utc).isoformat(),
            })

        logger.info(
            f"[INVENTORY] Transfer applied | "
            f"trade_id={record_id} | "
            f"lines={len(aggregated)}"
        )
        return TransferResult(success=True, trade_record_id=record_id)


# =============================================================================
# SqlInventoryStore
# =============================================================================

class SqlInventoryStore(InventoryStore):
    """
    SQLAlchemy-backed inventory.

    ============================================================================
    COMMIT PROCEDURE:
    ============================================================================
    1. Aggregate lines per (owner, receiver, item)
    2. Open one transaction
    3. SELECT ... FOR UPDATE every touched inventory row, in sorted
       (user_id, item_id) order so concurrent commits lock in the same order
    4. Verify owned quantity and tradeability for every outgoing line
    5. Apply net deltas: update, delete rows that reach zero, insert or
       revive receiver rows
    6. Insert the trades + trade_items history rows
    7. COMMIT; any exception rolls back everything
    ============================================================================

    Backends without row locks (SQLite) are serialized by a process-wide
    commit lock held for the whole transaction.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        commit_lock: Optional[threading.Lock] = None,
    ) -> None:
        self._session_factory = session_factory
        self._commit_lock = commit_lock or threading.Lock()

    def get_holding(self, user_id: int, item_id: int) -> Optional[Holding]:
        query = (
            select(
                inventories_table.c.quantity,
                items_table.c.name,
                items_table.c.image_url,
                items_table.c.is_tradeable,
            )
            .select_from(
                inventories_table.join(
                    items_table,
                    inventories_table.c.item_id == items_table.c.item_id,
                )
            )
            .where(inventories_table.c.user_id == user_id)
            .where(inventories_table.c.item_id == item_id)
            .where(inventories_table.c.is_deleted.is_(False))
        )

        session = self._session_factory()
        try:
            row = session.execute(query).first()
        finally:
            session.close()

        if row is None or row.quantity <= 0:
            return None

        return Holding(
            user_id=user_id,
            item_id=item_id,
            quantity=row.quantity,
            tradeable=bool(row.is_tradeable),
            name=row.name,
            image_url=row.image_url,
        )

    def check_and_transfer(
        self,
        transfers: List[Transfer],
        context: Optional[TradeRecordContext] = None,
    ) -> TransferResult:
        aggregated = aggregate_transfers(transfers)
        trade_id = context.trade_id if context else None

        invalid = _invalid_lines(aggregated)
        if invalid:
            return TransferResult(
                success=False,
                reason=TransferFailureReason.INVALID_LINE,
                failed_lines=invalid,
            )

        deltas = _net_deltas(aggregated)
        outgoing = _outgoing_totals(aggregated)
        item_ids = sorted({t.item_id for t in aggregated})

        with self._commit_lock:
            session = self._session_factory()
            try:
                rows = self._lock_rows(session, sorted(deltas.keys()))
                tradeable = self._tradeable_map(session, item_ids)

                failures: List[Dict[str, Any]] = []
                for (user_id, item_id), requested in outgoing.items():
                    row = rows.get((user_id, item_id))
                    held = 0
                    if row is not None and not row["is_deleted"]:
                        held = row["quantity"]
                    if not tradeable.get(item_id, False):
                        failures.append({
                            "userId": user_id,
                            "itemId": item_id,
                            "requested": requested,
                            "available": held,
                            "reason": TransferFailureReason.NOT_TRADEABLE,
                        })
                    elif held < requested:
                        failures.append({
                            "userId": user_id,
                            "itemId": item_id,
                            "requested": requested,
                            "available": held,
                            "reason": TransferFailureReason.INSUFFICIENT_QUANTITY,
                        })

                if failures:
                    session.rollback()
                    logger.warning(
                        f"[INVENTORY] Transfer rejected | "
                        f"trade_id={trade_id} | "
                        f"failed_lines={len(failures)}"
                    )
                    return TransferResult(
                        success=False,
                        reason=failures[0]["reason"],
                        failed_lines=failures,
                    )

                for key in sorted(deltas.keys()):
                    self._apply_delta(session, key, deltas[key], rows.get(key))

                record_id = self._record_trade(session, aggregated, context)
                session.commit()

            except Exception:
                session.rollback()
                logger.error(
                    f"[INVENTORY] Transfer aborted, transaction rolled back | "
                    f"trade_id={trade_id}"
                )
                raise
            finally:
                session.close()

        logger.info(
            f"[INVENTORY] Transfer applied | "
            f"trade_id={record_id} | "
            f"lines={len(aggregated)}"
        )
        return TransferResult(success=True, trade_record_id=record_id)

    # -------------------------------------------------------------------------
    # Transaction helpers
    # -------------------------------------------------------------------------

    def _lock_rows(
        self,
        session: Session,
        keys: List[Tuple[int, int]],
    ) -> Dict[Tuple[int, int], Dict[str, Any]]:
        rows: Dict[Tuple[int, int], Dict[str, Any]] = {}
        for user_id, item_id in keys:
            row = session.execute(
                select(inventories_table)
                .where(inventories_table.c.user_id == user_id)
                .where(inventories_table.c.item_id == item_id)
                .with_for_update()
            ).mappings().first()
            if row is not None:
                rows[(user_id, item_id)] = dict(row)
        return rows

    def _tradeable_map(self, session: Session, item_ids: List[int]) -> Dict[int, bool]:
        if not item_ids:
            return {}
        result = session.execute(
            select(items_table.c.item_id, items_table.c.is_tradeable)
            .where(items_table.c.item_id.in_(item_ids))
        )
        return {row.item_id: bool(row.is_tradeable) for row in result}

    def _apply_delta(
        self,
        session: Session,
        key: Tuple[int, int],
        delta: int,
        row: Optional[Dict[str, Any]],
    ) -> None:
        if delta == 0:
            return

        user_id, item_id = key
        current = 0
        if row is not None and not row["is_deleted"]:
            current = row["quantity"]
        new_quantity = current + delta

        if row is None:
            session.execute(
                insert(inventories_table).values(
                    user_id=user_id,
                    item_id=item_id,
                    quantity=new_quantity,
                    is_deleted=False,
                )
            )
        elif new_quantity <= 0:
            session.execute(
                delete(inventories_table)
                .where(inventories_table.c.inventory_id == row["inventory_id"])
            )
        else:
            session.execute(
                update(inventories_table)
                .where(inventories_table.c.inventory_id == row["inventory_id"])
                .values(quantity=new_quantity, is_deleted=False)
            )

    def _record_trade(
        self,
        session: Session,
        transfers: List[Transfer],
        context: Optional[TradeRecordContext],
    ) -> str:
        record_id = context.trade_id if context else uuid.uuid4().hex
        sender_id = context.sender_id if context else transfers[0].from_user_id
        receiver_id = context.receiver_id if context else transfers[0].to_user_id

        session.execute(
            insert(trades_table).values(
                trade_id=record_id,
                sender_id=sender_id,
                receiver_id=receiver_id,
                status="Completed",
                is_live_trade=True,
            )
        )
        for transfer in transfers:
            session.execute(
                insert(trade_items_table).values(
                    trade_item_id=uuid.uuid4().hex,
                    trade_id=record_id,
                    item_id=transfer.item_id,
                    quantity=transfer.quantity,
                    offered_by=_offered_by(transfer, context),
                )
            )
        return record_id


__all__ = [
    "Holding",
    "Transfer",
    "TradeRecordContext",
    "TransferResult",
    "TransferFailureReason",
    "InventoryStore",
    "InMemoryInventoryStore",
    "SqlInventoryStore",
    "aggregate_transfers",
]
