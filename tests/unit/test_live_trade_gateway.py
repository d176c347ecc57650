"""
============================================================================
Unit Tests - Live Trade Gateway
============================================================================

Reliability Level: L6 Critical

Tests the socket-facing translation layer:
- Frame decoding and schema validation errors
- Dispatch of every command type
- Error events go to the originating socket only
- Superseded sockets are refused
============================================================================
"""

import json
import os
import sys

import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from app.auth.security import AuthenticationError
from app.schemas.live_trade import AddItemMessage, RemoveItemMessage, TradeInviteMessage
from services.inventory_store import InMemoryInventoryStore
from services.live_trade_models import (
    MalformedMessage,
    TradeState,
    UnknownMessageType,
    UserRef,
)


ALICE = UserRef(id=1, username="alice")
BOB = UserRef(id=2, username="bob")
CAROL = UserRef(id=3, username="carol")


@pytest.fixture
def live(harness_factory):
    inventory = InMemoryInventoryStore()
    inventory.set_quantity(ALICE.id, 5, 1)
    inventory.set_quantity(BOB.id, 9, 2)
    h = harness_factory(inventory=inventory)
    h.alice = h.connect(ALICE)
    h.bob = h.connect(BOB)
    return h


# =============================================================================
# Parsing Tests
# =============================================================================

class TestParseMessage:
    """parse_message() validation."""

    def test_parses_invite(self, harness) -> None:
        command = harness.gateway.parse_message(json.dumps({
            "type": "trade_invite",
            "targetUserId": 2,
            "targetUsername": "bob",
            "listingItemId": 42,
        }))

        assert isinstance(command, TradeInviteMessage)
        assert command.target_user_id == 2
        assert command.listing_item_id == 42

    def test_add_item_quantity_defaults_to_one(self, harness) -> None:
        command = harness.gateway.parse_message(
            '{"type": "add_item", "tradeId": "t", "itemId": 5}'
        )

        assert isinstance(command, AddItemMessage)
        assert command.quantity == 1

    def test_remove_item_quantity_optional(self, harness) -> None:
        command = harness.gateway.parse_message(
            b'{"type": "remove_item", "tradeId": "t", "itemId": 5}'
        )

        assert isinstance(command, RemoveItemMessage)
        assert command.quantity is None

    def test_extra_keys_ignored(self, harness) -> None:
        command = harness.gateway.parse_message('{"type": "ping", "nonce": 1}')

        assert command.type == "ping"

    @pytest.mark.parametrize("raw", [
        "not json",
        "[1, 2]",
        "42",
        b"\xff\xfe",
    ])
    def test_malformed_frames(self, harness, raw) -> None:
        with pytest.raises(MalformedMessage):
            harness.gateway.parse_message(raw)

    @pytest.mark.parametrize("raw", [
        '{"tradeId": "t"}',
        '{"type": ""}',
        '{"type": 7}',
        '{"type": "trade_counter_offer"}',
    ])
    def test_unknown_types(self, harness, raw) -> None:
        with pytest.raises(UnknownMessageType):
            harness.gateway.parse_message(raw)

    @pytest.mark.parametrize("payload", [
        {"type": "add_item", "tradeId": "t", "itemId": "5"},
        {"type": "add_item", "tradeId": "t", "itemId": 5, "quantity": 0},
        {"type": "add_item", "tradeId": "t", "itemId": 5, "quantity": 1.5},
        {"type": "add_item", "tradeId": "t", "itemId": True},
        {"type": "add_item", "itemId": 5},
        {"type": "trade_invite", "targetUserId": -1},
        {"type": "confirm_trade", "tradeId": ""},
    ])
    def test_schema_violations(self, harness, payload) -> None:
        with pytest.raises(MalformedMessage):
            harness.gateway.parse_message(json.dumps(payload))

    def test_schema_violation_keeps_trade_id(self, harness) -> None:
        with pytest.raises(MalformedMessage) as exc_info:
            harness.gateway.parse_message(json.dumps(
                {"type": "add_item", "tradeId": "abc", "itemId": 0}
            ))

        assert exc_info.value.trade_id == "abc"
        assert "itemId" in exc_info.value.message


# =============================================================================
# Dispatch Tests
# =============================================================================

class TestHandleMessage:
    """handle_message() end to end."""

    def test_connect_sends_connection_success(self, harness, make_connection) -> None:
        connection = make_connection()
        harness.gateway.connect(ALICE, connection)

        event = connection.last()
        assert event["type"] == "connection_success"
        assert event["user"] == {"id": 1, "username": "alice"}

    def test_ping(self, live) -> None:
        live.send(ALICE, {"type": "ping"})

        assert live.alice.last() == {"type": "pong"}

    def test_full_negotiation_over_messages(self, live) -> None:
        live.send(ALICE, {"type": "trade_invite", "targetUserId": 2, "targetUsername": "bob"})
        trade_id = live.bob.last("trade_invite_received")["tradeId"]

        live.send(BOB, {"type": "trade_accept", "tradeId": trade_id})
        live.send(ALICE, {"type": "add_item", "tradeId": trade_id, "itemId": 5})
        live.send(BOB, {"type": "add_item", "tradeId": trade_id, "itemId": 9, "quantity": 2})
        live.send(ALICE, {"type": "confirm_trade", "tradeId": trade_id})
        live.send(BOB, {"type": "confirm_trade", "tradeId": trade_id})

        assert live.alice.last("trade_completed")["tradeId"] == trade_id
        assert live.inventory.quantity_of(ALICE.id, 9) == 2
        assert live.inventory.quantity_of(BOB.id, 5) == 1
        assert live.alice.events_of("error") == []
        assert live.bob.events_of("error") == []

    def test_invite_without_username_uses_placeholder(self, live) -> None:
        live.send(ALICE, {"type": "trade_invite", "targetUserId": 2})

        assert live.alice.last("trade_invite_sent")["to"]["username"] == "user-2"

    def test_remove_and_cancel_dispatch(self, live) -> None:
        live.send(ALICE, {"type": "trade_invite", "targetUserId": 2})
        trade_id = live.bob.last("trade_invite_received")["tradeId"]
        live.send(BOB, {"type": "trade_accept", "tradeId": trade_id})
        live.send(BOB, {"type": "add_item", "tradeId": trade_id, "itemId": 9, "quantity": 2})

        live.send(BOB, {"type": "remove_item", "tradeId": trade_id, "itemId": 9, "quantity": 1})
        assert live.alice.last("trade_updated")["trade"]["partnerItems"][0]["quantity"] == 1

        live.send(ALICE, {"type": "cancel_trade", "tradeId": trade_id})
        assert live.bob.last("trade_cancelled")["cancelledBy"]["id"] == ALICE.id

    def test_decline_dispatch(self, live) -> None:
        live.send(ALICE, {"type": "trade_invite", "targetUserId": 2})
        trade_id = live.bob.last("trade_invite_received")["tradeId"]

        live.send(BOB, {"type": "trade_decline", "tradeId": trade_id})

        assert live.alice.last("trade_declined")["tradeId"] == trade_id

    def test_error_goes_to_sender_only(self, live) -> None:
        live.send(ALICE, {"type": "confirm_trade", "tradeId": "missing"})

        assert live.alice.last() == {
            "type": "error",
            "code": "SessionNotFound",
            "message": "Trade session not found",
            "tradeId": "missing",
        }
        assert live.bob.messages == []

    def test_malformed_frame_reported(self, live) -> None:
        live.gateway.handle_message(ALICE, "{broken")

        error = live.alice.last("error")
        assert error["code"] == "MalformedMessage"
        assert "tradeId" not in error

    def test_unknown_type_reported(self, live) -> None:
        live.send(ALICE, {"type": "teleport"})

        assert live.alice.last("error")["code"] == "UnknownMessageType"

    def test_stranger_gets_not_a_participant(self, live) -> None:
        carol = live.connect(CAROL)
        live.send(ALICE, {"type": "trade_invite", "targetUserId": 2})
        trade_id = live.bob.last("trade_invite_received")["tradeId"]

        live.send(CAROL, {"type": "trade_accept", "tradeId": trade_id})

        assert carol.last("error")["code"] == "NotAParticipant"
        assert live.registry.get_session(trade_id).state is TradeState.INVITED

    def test_unexpected_exception_becomes_internal_error(self, live, monkeypatch) -> None:
        def explode(*args, **kwargs):
            raise KeyError("bug")

        monkeypatch.setattr(live.machine, "cancel", explode)

        live.send(ALICE, {"type": "cancel_trade", "tradeId": "t"})

        assert live.alice.last("error")["code"] == "InternalError"

    def test_superseded_handle_is_refused(self, live, make_connection) -> None:
        old = make_connection()
        new = make_connection()
        live.gateway.connect(CAROL, old)
        live.gateway.connect(CAROL, new)
        new.clear()

        live.gateway.handle_message(CAROL, '{"type": "ping"}', handle=old)

        assert old.last()["code"] == "ConnectionSuperseded"
        assert new.messages == []

    def test_current_handle_is_accepted(self, live, make_connection) -> None:
        handle = make_connection()
        live.gateway.connect(CAROL, handle)
        handle.clear()

        live.gateway.handle_message(CAROL, '{"type": "ping"}', handle=handle)

        assert handle.last() == {"type": "pong"}


class TestAuthenticate:
    """Token resolution at the gateway."""

    def test_valid_token(self, harness, token_for) -> None:
        user = harness.gateway.authenticate(token_for(ALICE))

        assert user == ALICE

    def test_missing_token(self, harness) -> None:
        with pytest.raises(AuthenticationError):
            harness.gateway.authenticate(None)
