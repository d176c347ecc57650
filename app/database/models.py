"""
============================================================================
BarterBay Live Trade
Database Schema - SQLAlchemy Core Tables
============================================================================

Reliability Level: L6 Critical
Input Constraints: Table layout mirrors the BarterBay backend schema
Side Effects: create_schema() issues DDL

Only the tables the live-trade core reads or writes are declared here:
users, items, inventories, trades, trade_items, notifications. Migrations for the
full application schema live with the main backend.

============================================================================
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.engine import Engine


metadata = MetaData()


# ============================================================================
# USERS
# ============================================================================

# Read-only here; accounts are owned by the main backend.
users_table = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
)


# ============================================================================
# ITEMS
# ============================================================================

items_table = Table(
    "items",
    metadata,
    Column("item_id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("image_url", String(512), nullable=True),
    Column("is_tradeable", Boolean, nullable=False, default=True),
)


# ============================================================================
# INVENTORIES
# ============================================================================

# One row per (user, item); quantity is the owned count.
inventories_table = Table(
    "inventories",
    metadata,
    Column("inventory_id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("item_id", Integer, ForeignKey("items.item_id"), nullable=False),
    Column("quantity", Integer, nullable=False, default=1),
    Column("is_deleted", Boolean, nullable=False, default=False),
    Column("acquired_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "item_id", name="uq_inventories_user_item"),
)


# ============================================================================
# TRADE HISTORY
# ============================================================================

trades_table = Table(
    "trades",
    metadata,
    Column("trade_id", String(64), primary_key=True),
    Column("sender_id", Integer, nullable=False),
    Column("receiver_id", Integer, nullable=False),
    Column("status", String(16), nullable=False, default="Pending"),
    Column("is_live_trade", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)

trade_items_table = Table(
    "trade_items",
    metadata,
    Column("trade_item_id", String(64), primary_key=True),
    Column("trade_id", String(64), ForeignKey("trades.trade_id"), nullable=False),
    Column("item_id", Integer, ForeignKey("items.item_id"), nullable=False),
    Column("quantity", Integer, nullable=False, default=1),
    Column("offered_by", String(16), nullable=False),  # Sender | Receiver
)


# ============================================================================
# NOTIFICATIONS
# ============================================================================

notifications_table = Table(
    "notifications",
    metadata,
    Column("notification_id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("type", String(32), nullable=False),
    Column("title", String(255), nullable=False),
    Column("message", Text, nullable=False),
    Column("related_id", String(64), nullable=True),
    Column("is_read", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)


def create_schema(engine: Engine) -> None:
    """
    Create any missing live-trade tables.

    Intended for development databases and tests; production schemas are
    owned by the backend migrations.
    """
    metadata.create_all(engine)


__all__ = [
    "metadata",
    "users_table",
    "items_table",
    "inventories_table",
    "trades_table",
    "trade_items_table",
    "notifications_table",
    "create_schema",
]
