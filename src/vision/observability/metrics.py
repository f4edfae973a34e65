from __future__ import annotations

"""Prometheus instrumentation for the studio API.

Request latency is observed by an HTTP middleware keyed on method, route shape
and status. Ledger movements and stream session outcomes have their own
counters.
"""

import time
from typing import Awaitable, Callable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

# Upper buckets cover long-lived SSE responses
REQUEST_LATENCY = Histogram(
    "vision_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 120.0),
)

LEDGER_TOKENS = Counter(
    "vision_ledger_tokens_total",
    "Tokens moved through the usage ledger",
    labelnames=("feature", "direction"),
)

STREAM_SESSIONS = Counter(
    "vision_stream_sessions_total",
    "Stream relay sessions by terminal outcome",
    labelnames=("outcome",),
)


# Static path segments served by the routers; anything else is an identifier
ROUTE_WORDS = frozenset(
    {
        "auth", "login", "register", "me",
        "studio", "research", "generate-image", "edit-image", "infographic", "analyze-image",
        "images", "chat", "stream", "title", "sessions", "messages",
        "transcripts", "refine", "usage", "admin", "users", "tokens", "password", "assistants",
        "health", "metrics", "docs", "openapi.json",
    }
)


def sanitize_path(path: str) -> str:
    """Collapse identifier segments so ``/transcripts/<id>/refine`` becomes ``/transcripts/{id}/refine``."""
    path = path.split("?")[0]
    segs = [s for s in path.split("/") if s]
    if not segs:
        return "/"
    return "/" + "/".join(s if s in ROUTE_WORDS else "{id}" for s in segs)


def record_ledger(feature: str, delta: int) -> None:
    direction = "debit" if delta < 0 else "credit"
    LEDGER_TOKENS.labels(feature=feature, direction=direction).inc(abs(delta))


def record_stream(outcome: str) -> None:
    STREAM_SESSIONS.labels(outcome=outcome).inc()


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        if request.url.path.startswith("/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        REQUEST_LATENCY.labels(
            method=request.method,
            path=sanitize_path(request.url.path),
            status=str(response.status_code),
        ).observe(elapsed)
        return response

    return middleware
