"""
Property-Based Tests for Inventory Commit Atomicity

Reliability Level: L6 Critical

Properties:
- Conservation: a successful commit never creates or destroys units; a
  rejected commit changes nothing
- Double spend: when several commits race for the same units from worker
  threads, the units are transferred at most as often as they exist
"""

import os
import sys
import threading
from collections import Counter
from typing import Dict, List, Tuple

from hypothesis import given, settings
from hypothesis import strategies as st

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from services.inventory_store import (
    InMemoryInventoryStore,
    TradeRecordContext,
    Transfer,
)


USER_IDS = [1, 2, 3]
ITEM_IDS = [10, 11]


# =============================================================================
# HYPOTHESIS STRATEGIES
# =============================================================================

holdings_strategy = st.dictionaries(
    keys=st.tuples(st.sampled_from(USER_IDS), st.sampled_from(ITEM_IDS)),
    values=st.integers(min_value=1, max_value=5),
    max_size=6,
)

transfer_strategy = st.builds(
    lambda pair, item_id, quantity: Transfer(
        from_user_id=pair[0], to_user_id=pair[1], item_id=item_id, quantity=quantity
    ),
    pair=st.permutations(USER_IDS).map(lambda users: (users[0], users[1])),
    item_id=st.sampled_from(ITEM_IDS),
    quantity=st.integers(min_value=1, max_value=4),
)


def _totals_per_item(snapshot: Dict[Tuple[int, int], int]) -> Counter:
    totals: Counter = Counter()
    for (_, item_id), quantity in snapshot.items():
        totals[item_id] += quantity
    return totals


def _store(holdings) -> InMemoryInventoryStore:
    store = InMemoryInventoryStore()
    for (user_id, item_id), quantity in holdings.items():
        store.set_quantity(user_id, item_id, quantity)
    return store


# =============================================================================
# PROPERTIES
# =============================================================================

@settings(max_examples=150, deadline=None)
@given(holdings=holdings_strategy, transfers=st.lists(transfer_strategy, max_size=6))
def test_commit_conserves_units(holdings, transfers: List[Transfer]) -> None:
    """
    Property: total units per item are unchanged by any commit, and a
    rejected commit leaves every holding untouched.
    """
    store = _store(holdings)
    before = store.snapshot()

    result = store.check_and_transfer(
        transfers,
        TradeRecordContext(trade_id="t", sender_id=1, receiver_id=2),
    )
    after = store.snapshot()

    assert _totals_per_item(after) == _totals_per_item(before)
    if not result.success:
        assert after == before
        assert result.failed_lines
    assert all(quantity > 0 for quantity in after.values())


@settings(max_examples=30, deadline=None)
@given(
    stock=st.integers(min_value=1, max_value=3),
    contenders=st.integers(min_value=2, max_value=8),
)
def test_concurrent_commits_never_double_spend(stock: int, contenders: int) -> None:
    """
    Property: user 1 owns `stock` units; `contenders` threads each try to
    move one unit to a different receiver at the same time. Exactly `stock`
    commits (or all of them, if fewer) succeed.
    """
    store = InMemoryInventoryStore()
    store.set_quantity(1, 10, stock)
    barrier = threading.Barrier(contenders)
    results = []
    results_lock = threading.Lock()

    def commit(receiver_id: int) -> None:
        barrier.wait()
        result = store.check_and_transfer(
            [Transfer(from_user_id=1, to_user_id=receiver_id, item_id=10, quantity=1)],
            TradeRecordContext(trade_id=f"t-{receiver_id}", sender_id=1, receiver_id=receiver_id),
        )
        with results_lock:
            results.append(result.success)

    threads = [
        threading.Thread(target=commit, args=(100 + n,))
        for n in range(contenders)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(True) == min(stock, contenders)
    assert store.quantity_of(1, 10) == stock - min(stock, contenders)
    received = sum(store.quantity_of(100 + n, 10) for n in range(contenders))
    assert received == min(stock, contenders)
