"""
============================================================================
BarterBay Live Trade
Database Session - SQLAlchemy Engine & Session Management
============================================================================

Reliability Level: L6 Critical
Input Constraints: DATABASE_URL (defaults to a local SQLite file)
Side Effects: Database connections

MANDATE:
- One pooled engine per process
- All timestamps stored in UTC
- Inventory transfers run inside explicit transactions (see
  services/inventory_store.py)

============================================================================
"""

import os
from typing import Generator

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


# ============================================================================
# DATABASE CONFIGURATION
# ============================================================================

DEFAULT_DATABASE_URL = "sqlite:///./barterbay.db"


def get_database_url() -> str:
    """
    Resolve the SQLAlchemy connection URL.

    Environment Variables:
        DATABASE_URL: Full SQLAlchemy URL (default: sqlite:///./barterbay.db)
    """
    return os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)


def build_engine(url: str) -> Engine:
    """
    Create an engine with pool settings suited to the backend.

    SQLite gets check_same_thread disabled because commits run on worker
    threads; server databases get a bounded, pre-pinged pool.
    """
    echo = os.getenv("DB_ECHO", "false").lower() == "true"

    if url.startswith("sqlite"):
        return create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
        )

    return create_engine(
        url,
        pool_size=10,           # Maintain 10 connections
        max_overflow=20,        # Allow up to 20 additional connections under load
        pool_timeout=30,        # Wait up to 30s for a connection
        pool_recycle=1800,      # Recycle connections after 30 minutes
        pool_pre_ping=True,     # Verify connections before use
        echo=echo,
        execution_options={
            "isolation_level": "READ COMMITTED"
        },
    )


# ============================================================================
# SQLALCHEMY ENGINE
# ============================================================================

DATABASE_URL = get_database_url()

engine = build_engine(DATABASE_URL)


@event.listens_for(engine, "connect")
def set_timezone(dbapi_connection, connection_record):
    """Force UTC on PostgreSQL connections; other dialects are left alone."""
    if engine.dialect.name != "postgresql":
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("SET timezone TO 'UTC'")
    cursor.close()


# ============================================================================
# SESSION FACTORY
# ============================================================================

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine
)


def get_db() -> Generator[Session, None, None]:
    """
    FastAPI dependency for database session injection.

    Yields:
        Session: SQLAlchemy database session, rolled back on error and
        always closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# ============================================================================
# HEALTH CHECK
# ============================================================================

def check_database_connection() -> bool:
    """
    Verify database connectivity.

    Returns:
        bool: True if database is reachable

    Raises:
        RuntimeError: If database connection fails
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        raise RuntimeError(f"Database connection failed: {e}") from e
