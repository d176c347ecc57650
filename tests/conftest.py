"""
============================================================================
Shared Test Fixtures - Live Trade
============================================================================

Provides:
- RecordingConnection: in-memory socket handle that records every frame
- LiveTradeHarness: fully wired core (registry, connections, in-memory
  inventory, notifier, state machine, gateway) without any real socket
============================================================================
"""

import json
import os
import sys
from typing import Optional, Dict, Any, List

import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from app.auth.security import TokenVerifier, issue_token
from services.connection_manager import ConnectionManager
from services.inventory_store import InMemoryInventoryStore
from services.live_trade_config import LiveTradeConfig, reset_live_trade_config
from services.live_trade_gateway import LiveTradeGateway
from services.live_trade_models import UserRef
from services.notification_service import NotificationService
from services.trade_session_registry import TradeSessionRegistry
from services.trade_state_machine import LiveTradeStateMachine


TEST_SECRET = "test-secret-for-live-trade-tokens-0123456789"

ALICE = UserRef(id=1, username="alice")
BOB = UserRef(id=2, username="bob")
CAROL = UserRef(id=3, username="carol")
DAVE = UserRef(id=4, username="dave")


# =============================================================================
# Fake Socket Handle
# =============================================================================

class RecordingConnection:
    """Socket handle double: records sent frames and close calls."""

    def __init__(self, accept: bool = True) -> None:
        self.accept = accept
        self.messages: List[str] = []
        self.closed_with: Optional[tuple] = None

    def send_text(self, message: str) -> bool:
        if not self.accept or self.closed_with is not None:
            return False
        self.messages.append(message)
        return True

    def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed_with = (code, reason)

    @property
    def events(self) -> List[Dict[str, Any]]:
        return [json.loads(m) for m in self.messages]

    def events_of(self, event_type: str) -> List[Dict[str, Any]]:
        return [e for e in self.events if e.get("type") == event_type]

    def last(self, event_type: Optional[str] = None) -> Optional[Dict[str, Any]]:
        events = self.events if event_type is None else self.events_of(event_type)
        return events[-1] if events else None

    def types(self) -> List[str]:
        return [e.get("type") for e in self.events]

    def clear(self) -> None:
        self.messages.clear()


class RecordingSubscriber:
    """Notification subscriber exposing on_event()."""

    def __init__(self) -> None:
        self.received = []

    def on_event(self, notification) -> None:
        self.received.append(notification)


# =============================================================================
# Harness
# =============================================================================

class LiveTradeHarness:
    """Wired live-trade core for tests."""

    def __init__(
        self,
        config: Optional[LiveTradeConfig] = None,
        inventory=None,
    ) -> None:
        self.config = config or LiveTradeConfig(
            idle_timeout_seconds=600,
            sweep_interval_seconds=30,
            terminal_grace_seconds=0,
        )
        self.inventory = inventory or InMemoryInventoryStore()
        self.registry = TradeSessionRegistry()
        self.connections = ConnectionManager(
            supersede_close_code=self.config.supersede_close_code
        )
        self.notifier = NotificationService()
        self.subscriber = RecordingSubscriber()
        self.notifier.add_subscriber(self.subscriber)
        self.machine = LiveTradeStateMachine(
            registry=self.registry,
            connections=self.connections,
            inventory=self.inventory,
            notifier=self.notifier,
            config=self.config,
        )
        self.gateway = LiveTradeGateway(
            state_machine=self.machine,
            connections=self.connections,
            token_verifier=TokenVerifier(secret_key=TEST_SECRET),
        )

    def connect(self, user: UserRef) -> RecordingConnection:
        connection = RecordingConnection()
        self.gateway.connect(user, connection)
        connection.clear()
        return connection

    def send(self, user: UserRef, message: Dict[str, Any]) -> None:
        self.gateway.handle_message(user, json.dumps(message))

    def negotiating(self, initiator: UserRef = ALICE, partner: UserRef = BOB) -> str:
        """Create a session and accept it; returns the trade id."""
        session = self.machine.invite(initiator, partner)
        self.machine.accept(partner.id, session.id)
        return session.id


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def _reset_config():
    reset_live_trade_config()
    yield
    reset_live_trade_config()


@pytest.fixture
def harness() -> LiveTradeHarness:
    return LiveTradeHarness()


@pytest.fixture
def harness_factory():
    def _build(**kwargs) -> LiveTradeHarness:
        return LiveTradeHarness(**kwargs)
    return _build


@pytest.fixture
def token_for():
    def _issue(user: UserRef, **kwargs) -> str:
        return issue_token(user.id, user.username, secret_key=TEST_SECRET, **kwargs)
    return _issue


@pytest.fixture
def make_connection():
    def _build(accept: bool = True) -> RecordingConnection:
        return RecordingConnection(accept=accept)
    return _build
