# ============================================================================
# BarterBay Live Trade
# Database Module - SQLAlchemy Session Management & Schema
# ============================================================================

from app.database.session import get_db, engine, SessionLocal
from app.database.models import metadata, create_schema

__all__ = ["get_db", "engine", "SessionLocal", "metadata", "create_schema"]
