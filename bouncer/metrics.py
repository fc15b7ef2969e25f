"""Prometheus metrics for the bouncer.

Metrics goals:
- low-cardinality labels (never user ids or room ids)
- invite outcomes, challenge events, promotions and HTTP request latency
"""
from __future__ import annotations

import time
from typing import Callable, Optional

from fastapi import Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


# ---------------------------
# Core metric objects
# ---------------------------
HTTP_REQUESTS_TOTAL = Counter(
    "bouncer_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "bouncer_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
INVITE_OUTCOMES_TOTAL = Counter(
    "bouncer_invite_outcomes_total",
    "Invite gate outcomes (completed, redirect or an error code)",
    ["outcome"],
)
CHALLENGE_EVENTS_TOTAL = Counter(
    "bouncer_challenge_events_total",
    "Join challenge engine events by result",
    ["result"],
)
PROMOTIONS_TOTAL = Counter(
    "bouncer_promotions_total",
    "Users promoted after answering their join challenge",
)


def record_invite_outcome(outcome: str) -> None:
    INVITE_OUTCOMES_TOTAL.labels(outcome=str(outcome)).inc()


def record_challenge_event(result: str) -> None:
    CHALLENGE_EVENTS_TOTAL.labels(result=str(result)).inc()


def record_promotion() -> None:
    PROMOTIONS_TOTAL.inc()


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """

    @app.middleware("http")
    async def _metrics_middleware(request, call_next):
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

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint(request: Request):
        if authorize is not None and not authorize(request):
            # avoid leaking existence details
            return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
