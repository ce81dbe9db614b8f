"""
Metrics collection for ScoreBase.
Wraps prometheus_client; recording a metric never raises into the caller.
"""
from __future__ import annotations

from typing import Union

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from shared.config import get_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)

# ── Counters ────────────────────────────────────────────────────────────
CROSS_TENANT_ACCESS_ATTEMPTS = Counter(
    "sb_cross_tenant_access_attempts_total",
    "Tenant isolation violations detected by the guard",
    ["violation_type"],
)
EVENTS_APPENDED = Counter(
    "sb_events_appended_total",
    "Events durably appended to the event log",
    ["event_type"],
)
IDEMPOTENT_REPLAYS = Counter(
    "sb_idempotent_replays_total",
    "Submissions answered with a previously stored event",
)
EVENTS_REJECTED = Counter(
    "sb_events_rejected_total",
    "Submissions rejected before projection",
    ["code"],
)
EVENTS_PURGED = Counter(
    "sb_events_purged_total",
    "Expired events removed from the event log",
)
BROADCAST_DELIVERIES = Counter(
    "sb_broadcast_deliveries_total",
    "Per-connection broadcast delivery attempts",
    ["message_type", "outcome"],
)
WS_MESSAGES = Counter(
    "sb_ws_messages_total",
    "Total WebSocket messages",
    ["direction"],
)

# ── Histograms ──────────────────────────────────────────────────────────
EVENT_WRITE_LATENCY = Histogram(
    "sb_event_write_latency_seconds",
    "Latency of the event append + projection transaction",
    ["event_type"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)
STANDINGS_CALCULATION_DURATION = Histogram(
    "sb_standings_calculation_seconds",
    "Duration of a full season standings recalculation",
    ["outcome"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)
SNAPSHOT_GENERATION = Histogram(
    "sb_snapshot_generation_seconds",
    "Snapshot generation latency",
    ["variant"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.2, 0.5, 1.0),
)

# ── Gauges ──────────────────────────────────────────────────────────────
WS_CONNECTIONS = Gauge(
    "sb_ws_connections_active",
    "Currently active WebSocket connections on this instance",
)


def inc(metric: Union[Counter, Gauge], amount: float = 1, **labels: str) -> None:
    """Increment a counter or gauge; failures are logged, not raised."""
    try:
        (metric.labels(**labels) if labels else metric).inc(amount)
    except Exception as exc:
        logger.warning("metric_emit_failed", metric=metric._name, error=str(exc))


def observe(histogram: Histogram, value: float, **labels: str) -> None:
    """Record a histogram sample; failures are logged, not raised."""
    try:
        (histogram.labels(**labels) if labels else histogram).observe(value)
    except Exception as exc:
        logger.warning("metric_emit_failed", metric=histogram._name, error=str(exc))


def start_metrics_server(port: int | None = None) -> None:
    """Start the Prometheus metrics HTTP server."""
    settings = get_settings()
    if not settings.metrics_enabled:
        return
    metrics_port = port or settings.metrics_port
    try:
        start_http_server(metrics_port)
        logger.info("metrics_server_started", port=metrics_port)
    except OSError as exc:
        logger.warning("metrics_server_failed", error=str(exc), port=metrics_port)
