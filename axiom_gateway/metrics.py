"""Prometheus metrics for the axiom gateway.

Metrics goals:
- low-cardinality labels (axiom ids, statuses, signal types; never operation payloads)
- observability for validations, repeated-block alerts, chain appends and
  presence signalling
"""
from __future__ import annotations

import os
import time
from typing import Callable, Optional

from fastapi import Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

def _env_bool(name: str, default: bool = True) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")

# ---------------------------
# Core metric objects
# ---------------------------
HTTP_REQUESTS_TOTAL = Counter(
    "axg_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "axg_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
VALIDATIONS_TOTAL = Counter(
    "axg_validations_total",
    "Total operation validations",
    ["status", "axiom"],
)
REPEATED_BLOCK_ALERTS_TOTAL = Counter(
    "axg_repeated_block_alerts_total",
    "Times the repeated-block monitor triggered",
)
CHAIN_APPENDS_TOTAL = Counter(
    "axg_chain_appends_total",
    "Events appended to the hash chain",
    ["type"],
)
SIGNALS_TOTAL = Counter(
    "axg_presence_signals_total",
    "Presence signal decisions",
    ["type", "outcome"],
)
CHANNEL_SILENCED = Gauge(
    "axg_presence_channel_silenced",
    "1 if the presence channel has been quarantined",
)

def record_validation(status: str, axiom: Optional[str]) -> None:
    VALIDATIONS_TOTAL.labels(status=str(status), axiom=str(axiom or "none")).inc()

def record_repeated_block_alert() -> None:
    REPEATED_BLOCK_ALERTS_TOTAL.inc()

def record_chain_append(event_type: str) -> None:
    CHAIN_APPENDS_TOTAL.labels(type=str(event_type)).inc()

def record_signal(signal_type: str, outcome: str) -> None:
    SIGNALS_TOTAL.labels(type=str(signal_type), outcome=str(outcome)).inc()

def set_channel_silenced(silenced: bool) -> None:
    CHANNEL_SILENCED.set(1.0 if silenced else 0.0)

def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """
    if not _env_bool("AXG_METRICS_ENABLED", True):
        return

    @app.middleware("http")
    async def _metrics_middleware(request: Request, call_next):
        start = time.time()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            route_path = getattr(route, "path", None) or request.url.path
            HTTP_REQUESTS_TOTAL.labels(method=request.method, route=route_path, status=str(status)).inc()
            HTTP_REQUEST_LATENCY_SECONDS.labels(method=request.method, route=route_path).observe(time.time() - start)

    @app.get("/metrics")
    async def metrics_endpoint(request: Request):
        if authorize is not None and not authorize(request):
            # avoid leaking existence details
            return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
