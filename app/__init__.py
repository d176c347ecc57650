# ============================================================================
# BarterBay Live Trade
# FastAPI Application Package
# ============================================================================
