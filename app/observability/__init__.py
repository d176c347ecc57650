"""
============================================================================
BarterBay Live Trade
Observability Module - Prometheus Metrics
============================================================================

Reliability Level: L5 High
Input Constraints: None
Side Effects: Exposes Prometheus metrics

============================================================================
"""

from app.observability.metrics import (
    SESSIONS_CREATED,
    SESSIONS_FINISHED,
    MESSAGES_RECEIVED,
    ERRORS_SENT,
    CONNECTIONS_GAUGE,
    COMMIT_HISTOGRAM,
    record_session_created,
    record_session_finished,
    record_message,
    record_error,
    update_connection_count,
    record_commit_duration,
)

__all__ = [
    "SESSIONS_CREATED",
    "SESSIONS_FINISHED",
    "MESSAGES_RECEIVED",
    "ERRORS_SENT",
    "CONNECTIONS_GAUGE",
    "COMMIT_HISTOGRAM",
    "record_session_created",
    "record_session_finished",
    "record_message",
    "record_error",
    "update_connection_count",
    "record_commit_duration",
]
