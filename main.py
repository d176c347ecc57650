#!/usr/bin/env python3
"""
============================================================================
BarterBay Live Trade
Service Launcher
============================================================================

Reliability Level: L5 High

Starts the live-trade FastAPI application under uvicorn.

ENVIRONMENT VARIABLES:
    - LIVE_TRADE_HOST: Bind address (default: 0.0.0.0)
    - LIVE_TRADE_PORT: Bind port (default: 8080)
    - LOG_LEVEL: Root log level (default: INFO)
    - plus every LIVE_TRADE_* variable read by services/live_trade_config.py

USAGE:
    python main.py

============================================================================
"""

import logging
import os

import uvicorn
from dotenv import load_dotenv

# Load environment variables first
load_dotenv()

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s | %(levelname)s | %(name)s | %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger("LIVE-TRADE")


def main() -> None:
    host = os.getenv("LIVE_TRADE_HOST", "0.0.0.0")
    port = int(os.getenv("LIVE_TRADE_PORT", "8080"))

    logger.info(f"Starting BarterBay live-trade service | host={host} | port={port}")

    uvicorn.run(
        "app.main:app",
        host=host,
        port=port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
