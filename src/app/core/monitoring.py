"""Prometheus metrics for the sync engine.

Provides:
- Queue outcome, pulled item and remote call counters
- track_remote_call(): Context manager recording remote API call metrics
- start_metrics_server(): /metrics endpoint for the long-running worker
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from prometheus_client import Counter, Histogram, start_http_server

logger = structlog.get_logger(__name__)

# ── Queue Metrics ────────────────────────────────────────────────────────────

sync_queue_outcomes_total = Counter(
    "sync_queue_outcomes_total",
    "Change queue entries finished by outcome",
    ["entity_type", "status"],
)

sync_stale_locks_reclaimed_total = Counter(
    "sync_stale_locks_reclaimed_total",
    "Change queue entries unlocked by stale-lock reclamation",
)

# ── Pull Metrics ─────────────────────────────────────────────────────────────

sync_pulled_items_total = Counter(
    "sync_pulled_items_total",
    "Remote items handled by the inbound pipeline",
    ["entity_type", "action"],
)

# ── Remote API Metrics ───────────────────────────────────────────────────────

remote_calls_total = Counter(
    "remote_calls_total",
    "Total remote CRM API calls",
    ["method", "status"],
)

remote_call_duration_seconds = Histogram(
    "remote_call_duration_seconds",
    "Remote CRM API call duration in seconds",
    ["method"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)


@asynccontextmanager
async def track_remote_call(method: str) -> AsyncGenerator[None, None]:
    """Context manager that records count and duration of one remote call.

    Usage:
        async with track_remote_call("crm.company.add"):
            response = await http.post(...)
    """
    start_time = time.perf_counter()
    status = "success"

    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        remote_calls_total.labels(method=method, status=status).inc()
        remote_call_duration_seconds.labels(method=method).observe(
            time.perf_counter() - start_time
        )


def start_metrics_server(port: int) -> bool:
    """Expose /metrics on port for the long-running worker.

    Returns False when disabled (port 0) or when the port cannot be bound.
    """
    if port <= 0:
        return False
    try:
        start_http_server(port)
    except OSError as exc:
        logger.warning("metrics.server_start_failed", port=port, error=str(exc))
        return False
    logger.info("metrics.server_started", port=port)
    return True
