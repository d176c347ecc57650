"""
============================================================================
BarterBay Live Trade
Prometheus Metrics
============================================================================

Reliability Level: L5 High
Input Constraints: Label values are short, bounded strings
Side Effects: Updates Prometheus metrics registry

METRICS EXPOSED
---------------
- live_trade_sessions_created_total: Sessions created by trade_invite
- live_trade_sessions_finished_total{outcome}: Terminal transitions
- live_trade_messages_total{message_type}: Inbound messages by type
- live_trade_errors_total{code}: Error events sent to clients
- live_trade_connections: Currently bound sockets
- live_trade_commit_seconds: Duration of the atomic inventory commit

Recording a metric never raises; failures are logged with an OBS code so a
broken registry cannot take down the trade path.

============================================================================
"""

import logging
from typing import Optional

from prometheus_client import Counter, Gauge, Histogram

# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# PROMETHEUS METRICS DEFINITIONS
# ============================================================================

SESSIONS_CREATED = Counter(
    "live_trade_sessions_created_total",
    "Total number of live-trade sessions created",
)

SESSIONS_FINISHED = Counter(
    "live_trade_sessions_finished_total",
    "Total number of live-trade sessions that reached a terminal state",
    ["outcome"]
)

MESSAGES_RECEIVED = Counter(
    "live_trade_messages_total",
    "Total number of inbound live-trade messages",
    ["message_type"]
)

ERRORS_SENT = Counter(
    "live_trade_errors_total",
    "Total number of error events sent to clients",
    ["code"]
)

CONNECTIONS_GAUGE = Gauge(
    "live_trade_connections",
    "Number of currently bound live-trade sockets"
)

# Buckets: 5ms .. 5s
COMMIT_HISTOGRAM = Histogram(
    "live_trade_commit_seconds",
    "Duration of the atomic inventory check-and-transfer",
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0]
)


# ============================================================================
# METRIC UPDATE FUNCTIONS
# ============================================================================

def record_session_created(trade_id: Optional[str] = None) -> None:
    """
    Record a new session.

    Side Effects: Increments Prometheus counter
    """
    try:
        SESSIONS_CREATED.inc()
        logger.debug("Metric: session_created | trade_id=%s", trade_id)
    except Exception as e:
        logger.error(
            "[OBS-001] Failed to record session_created metric | error=%s",
            str(e)
        )


def record_session_finished(
    outcome: str,
    trade_id: Optional[str] = None
) -> None:
    """
    Record a terminal transition.

    Args:
        outcome: Terminal state value (COMPLETED, CANCELLED, FAILED)
        trade_id: Optional session identifier for the debug log
    """
    try:
        SESSIONS_FINISHED.labels(outcome=outcome).inc()
        logger.debug(
            "Metric: session_finished | outcome=%s | trade_id=%s",
            outcome, trade_id
        )
    except Exception as e:
        logger.error(
            "[OBS-002] Failed to record session_finished metric | error=%s",
            str(e)
        )


def record_message(message_type: str) -> None:
    try:
        MESSAGES_RECEIVED.labels(message_type=message_type).inc()
    except Exception as e:
        logger.error(
            "[OBS-003] Failed to record message metric | error=%s",
            str(e)
        )


def record_error(code: str) -> None:
    try:
        ERRORS_SENT.labels(code=code).inc()
    except Exception as e:
        logger.error(
            "[OBS-004] Failed to record error metric | error=%s",
            str(e)
        )


def update_connection_count(count: int) -> None:
    """
    Set the bound-socket gauge.

    Side Effects: Updates Prometheus gauge
    """
    try:
        CONNECTIONS_GAUGE.set(count)
    except Exception as e:
        logger.error(
            "[OBS-005] Failed to update connections metric | error=%s",
            str(e)
        )


def record_commit_duration(
    seconds: float,
    trade_id: Optional[str] = None
) -> None:
    """
    Observe one commit attempt in the histogram.

    Args:
        seconds: Wall-clock duration of check_and_transfer()
        trade_id: Optional session identifier for the debug log
    """
    try:
        COMMIT_HISTOGRAM.observe(seconds)
        logger.debug(
            "Metric: commit_duration | seconds=%.4f | trade_id=%s",
            seconds, trade_id
        )
    except Exception as e:
        logger.error(
            "[OBS-006] Failed to record commit_duration metric | error=%s",
            str(e)
        )
