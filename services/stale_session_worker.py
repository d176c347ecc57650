"""
============================================================================
BarterBay Live Trade - Stale Session Worker
============================================================================

Reliability Level: L5 High
Traceability: Every cancelled session is logged with its trade_id

Background job that keeps the session registry from leaking entries:
- Cancels INVITED/NEGOTIATING sessions idle past the configured timeout
  (participants receive trade_cancelled with reason "timeout")
- Purges terminal sessions whose grace period has elapsed

Each pass runs on a worker thread because it takes session locks, which
may be held for the duration of an inventory commit.

============================================================================
"""

from typing import Optional, Dict
from datetime import datetime, timezone
import asyncio
import logging

from services.trade_session_registry import TradeSessionRegistry
from services.trade_state_machine import LiveTradeStateMachine

# Configure module logger
logger = logging.getLogger(__name__)


class StaleSessionWorker:
    """
    Periodic sweeper for idle and retired sessions.

    ============================================================================
    RESPONSIBILITIES:
    ============================================================================
    1. Every interval, expire idle sessions through the state machine
    2. Purge retired terminal sessions from the registry
    3. Survive any single failed pass
    ============================================================================
    """

    def __init__(
        self,
        state_machine: LiveTradeStateMachine,
        registry: TradeSessionRegistry,
        interval_seconds: int = 30,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError(
                f"interval_seconds must be positive, got: {interval_seconds}"
            )

        self._state_machine = state_machine
        self._registry = registry
        self._interval_seconds = interval_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None

        logger.info(
            f"[STALE-WORKER] Initialized | "
            f"interval_seconds={interval_seconds}"
        )

    @property
    def interval_seconds(self) -> int:
        return self._interval_seconds

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background task on the running loop."""
        if self._running:
            logger.warning("[STALE-WORKER] Already running, ignoring start request")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())

        logger.info(
            f"[STALE-WORKER] Started | "
            f"interval_seconds={self._interval_seconds}"
        )

    async def stop(self) -> None:
        if not self._running:
            logger.warning("[STALE-WORKER] Not running, ignoring stop request")
            return

        self._running = False

        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("[STALE-WORKER] Stopped")

    async def _run_loop(self) -> None:
        logger.info("[STALE-WORKER] Starting main loop")

        while self._running:
            try:
                await asyncio.to_thread(self.process_stale)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(
                    f"[STALE-WORKER] Error in main loop | "
                    f"error={str(e)}",
                    exc_info=True,
                )

            try:
                await asyncio.sleep(self._interval_seconds)
            except asyncio.CancelledError:
                break

        logger.info("[STALE-WORKER] Main loop exited")

    def process_stale(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Run one sweep.

        Args:
            now: Reference time (defaults to the current UTC time)

        Returns:
            {"expired": n, "purged": m}
        """
        now = now or datetime.now(timezone.utc)

        expired = self._state_machine.expire_idle_sessions(now)
        purged = self._registry.purge_retired(now)

        if expired or purged:
            logger.info(
                f"[STALE-WORKER] Sweep complete | "
                f"expired={expired} | "
                f"purged={purged} | "
                f"active={self._registry.active_count}"
            )

        return {"expired": expired, "purged": purged}


__all__ = [
    "StaleSessionWorker",
]
