# ============================================================================
# BarterBay Live Trade
# API Routes Module
# ============================================================================

from app.api.live_trade import router as live_trade_router

__all__ = ["live_trade_router"]
