"""
============================================================================
BarterBay Live Trade
FastAPI Application Entry Point
============================================================================

Reliability Level: L6 Critical
Input Constraints: Authenticated WebSocket clients on /live-trade
Side Effects: Inventory transfers, notification rows, background sweeper

MANDATE:
- No inventory moves except through one atomic check-and-transfer
- Every client-caused error is reported to the originating socket only
- Abandoned negotiations are swept, never leaked

============================================================================
"""

import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from app.api.live_trade import router as live_trade_router
from app.auth.security import SqlUserDirectory, TokenVerifier
from app.database.models import create_schema
from app.database.session import SessionLocal, check_database_connection, engine
from services.connection_manager import ConnectionManager
from services.inventory_store import InventoryStore, SqlInventoryStore
from services.live_trade_config import LiveTradeConfig, get_live_trade_config
from services.live_trade_gateway import LiveTradeGateway
from services.notification_service import NotificationService, SocketNotificationSubscriber
from services.stale_session_worker import StaleSessionWorker
from services.trade_session_registry import TradeSessionRegistry
from services.trade_state_machine import LiveTradeStateMachine

# Load environment variables
load_dotenv()

# Configure module logger
logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"


# ============================================================================
# SERVICE WIRING
# ============================================================================

@dataclass
class LiveTradeRuntime:
    """Every live-trade component of one application instance."""
    config: LiveTradeConfig
    registry: TradeSessionRegistry
    connections: ConnectionManager
    inventory: InventoryStore
    notifier: NotificationService
    state_machine: LiveTradeStateMachine
    gateway: LiveTradeGateway
    worker: StaleSessionWorker
    uses_database: bool


def build_runtime(
    config: Optional[LiveTradeConfig] = None,
    inventory_store: Optional[InventoryStore] = None,
    notifier: Optional[NotificationService] = None,
    token_verifier: Optional[TokenVerifier] = None,
) -> LiveTradeRuntime:
    """
    Assemble the live-trade core.

    Without an explicit inventory store the SQL store over DATABASE_URL is
    used, notifications are persisted to the same database and usernames are
    resolved from its users table.
    """
    config = config or get_live_trade_config()
    uses_database = inventory_store is None

    if inventory_store is None:
        inventory_store = SqlInventoryStore(SessionLocal)
    if token_verifier is None:
        token_verifier = TokenVerifier(
            user_lookup=SqlUserDirectory(SessionLocal) if uses_database else None
        )
    if notifier is None:
        notifier = NotificationService(
            session_factory=SessionLocal if uses_database else None
        )

    registry = TradeSessionRegistry()
    connections = ConnectionManager(supersede_close_code=config.supersede_close_code)
    notifier.add_subscriber(SocketNotificationSubscriber(connections))
    state_machine = LiveTradeStateMachine(
        registry=registry,
        connections=connections,
        inventory=inventory_store,
        notifier=notifier,
        config=config,
    )
    gateway = LiveTradeGateway(
        state_machine=state_machine,
        connections=connections,
        token_verifier=token_verifier,
    )
    worker = StaleSessionWorker(
        state_machine=state_machine,
        registry=registry,
        interval_seconds=config.sweep_interval_seconds,
    )

    return LiveTradeRuntime(
        config=config,
        registry=registry,
        connections=connections,
        inventory=inventory_store,
        notifier=notifier,
        state_machine=state_machine,
        gateway=gateway,
        worker=worker,
        uses_database=uses_database,
    )


# ============================================================================
# APPLICATION FACTORY
# ============================================================================

def create_app(
    config: Optional[LiveTradeConfig] = None,
    inventory_store: Optional[InventoryStore] = None,
    notifier: Optional[NotificationService] = None,
    token_verifier: Optional[TokenVerifier] = None,
    start_worker: bool = True,
) -> FastAPI:
    """
    Build the FastAPI application.

    Tests pass an InMemoryInventoryStore and a TokenVerifier with an
    explicit secret; production relies on the environment.
    """
    runtime = build_runtime(
        config=config,
        inventory_store=inventory_store,
        notifier=notifier,
        token_verifier=token_verifier,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup:
            - Create missing tables when running on the SQL store
            - Start the stale-session worker
        Shutdown:
            - Stop the worker
        """
        if runtime.uses_database:
            create_schema(engine)

        if start_worker:
            await runtime.worker.start()

        logger.info(
            f"[LIVE-TRADE] Service started | "
            f"version={APP_VERSION} | "
            f"config={runtime.config.to_dict()}"
        )

        yield

        if runtime.worker.is_running:
            await runtime.worker.stop()

        logger.info("[LIVE-TRADE] Service stopped")

    app = FastAPI(
        title="BarterBay Live Trade",
        description=(
            "Real-time peer-to-peer item trading over WebSocket.\n\n"
            "Connect to `/live-trade?token=...` to invite, negotiate, "
            "confirm and atomically commit item swaps."
        ),
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    app.state.runtime = runtime
    app.state.registry = runtime.registry
    app.state.gateway = runtime.gateway

    # CORS middleware (restrict in production)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        error_code = "SYS-500"
        logger.error(f"[{error_code}] Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error_code": error_code,
                "message": "Internal server error. This incident has been logged.",
                "timestamp": datetime.now(timezone.utc).isoformat()
            }
        )

    app.include_router(live_trade_router)

    @app.get(
        "/health",
        summary="Health Check",
        description="Lightweight health check for load balancers and monitoring.",
        tags=["System"]
    )
    async def health_check():
        body = {
            "status": "healthy",
            "active_sessions": runtime.registry.active_count,
            "connections": runtime.connections.connection_count,
        }
        if not runtime.uses_database:
            return body
        try:
            check_database_connection()
            body["database"] = "connected"
            return body
        except Exception as e:
            return JSONResponse(
                status_code=503,
                content={"status": "unhealthy", "database": "disconnected", "error": str(e)}
            )

    @app.get(
        "/metrics",
        summary="Prometheus Metrics",
        description="Exposes Prometheus metrics for observability.",
        tags=["Observability"]
    )
    async def metrics():
        return Response(
            content=generate_latest(),
            media_type=CONTENT_TYPE_LATEST
        )

    return app


app = create_app()
