"""Prometheus metrics endpoint.

Exposes quoting, submission and state-sync metrics for monitoring via
Grafana.
"""

from __future__ import annotations

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    start_http_server,
)

# ---------------------------------------------------------------------------
# System metrics
# ---------------------------------------------------------------------------

SYSTEM_INFO = Info("perp_mm", "Market maker information")

# ---------------------------------------------------------------------------
# Quoting metrics
# ---------------------------------------------------------------------------

QUOTE_CYCLES = Counter(
    "perp_mm_quote_cycles_total",
    "Quoting cycles by outcome",
    ["outcome"],
)

QUOTE_DECISIONS = Counter(
    "perp_mm_quote_decisions_total",
    "Per-instrument quote decisions",
    ["instrument", "decision"],
)

# ---------------------------------------------------------------------------
# Submission metrics
# ---------------------------------------------------------------------------

TRANSACTIONS_TOTAL = Counter(
    "perp_mm_transactions_total",
    "Transactions submitted, counted once per instrument they carry",
    ["instrument", "status"],
)

FENCE_REJECTIONS = Counter(
    "perp_mm_fence_rejections_total",
    "Transactions rejected by the sequence fence",
    ["instrument"],
)

SUBMISSION_LATENCY = Histogram(
    "perp_mm_submission_latency_seconds",
    "Time from submission to signature or error",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
)

# ---------------------------------------------------------------------------
# State metrics
# ---------------------------------------------------------------------------

EQUITY = Gauge(
    "perp_mm_equity",
    "Portfolio equity from the latest snapshot",
)

STATE_POLL_FAILURES = Counter(
    "perp_mm_state_poll_failures_total",
    "State polls that kept the previous snapshot",
)

STATE_POLL_LATENCY = Histogram(
    "perp_mm_state_poll_latency_seconds",
    "Duration of one batched account read",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
)

# ---------------------------------------------------------------------------
# Reference data metrics
# ---------------------------------------------------------------------------

VENUE_RESUBSCRIPTIONS = Counter(
    "perp_mm_venue_resubscriptions_total",
    "Reference venue streams restarted after a failure",
    ["venue"],
)


def start_metrics_server(port: int = 9090, cluster: str = "unknown") -> None:
    """Start Prometheus metrics HTTP server in a background thread."""
    SYSTEM_INFO.info({
        "version": "0.1.0",
        "cluster": cluster,
    })
    start_http_server(port)


# ---------------------------------------------------------------------------
# Convenience helpers
# ---------------------------------------------------------------------------


def record_cycle(outcome: str) -> None:
    """Record a quoting cycle ("run" or "skipped")."""
    QUOTE_CYCLES.labels(outcome=outcome).inc()


def record_decision(instrument: str, decision: str) -> None:
    QUOTE_DECISIONS.labels(instrument=instrument, decision=decision).inc()


def record_transaction(instruments: tuple[str, ...] | list[str], status: str) -> None:
    """Record a submission result ("ok", "failed" or "fence_rejected")."""
    for instrument in instruments:
        TRANSACTIONS_TOTAL.labels(instrument=instrument, status=status).inc()
        if status == "fence_rejected":
            FENCE_REJECTIONS.labels(instrument=instrument).inc()


def record_submission_latency(seconds: float) -> None:
    SUBMISSION_LATENCY.observe(seconds)


def update_equity(value: float) -> None:
    """Update the portfolio equity gauge."""
    EQUITY.set(value)


def record_poll_failure() -> None:
    STATE_POLL_FAILURES.inc()


def record_poll_latency(seconds: float) -> None:
    STATE_POLL_LATENCY.observe(seconds)


def record_venue_resubscription(venue: str) -> None:
    VENUE_RESUBSCRIPTIONS.labels(venue=venue).inc()
