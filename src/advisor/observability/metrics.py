from __future__ import annotations

"""Prometheus metrics for the advisor gateway.

Adds an HTTP middleware that records request latency per method/path/status,
plus outcome counters for chat turns and poster generations.
"""

import time
from typing import Callable, Awaitable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

# Histogram buckets chosen for web latencies (seconds); streaming turns run long
REQUEST_LATENCY = Histogram(
    "advisor_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

CHAT_TURNS = Counter(
    "advisor_chat_turns_total",
    "Chat turns by outcome (completed, partial, fallback, failed, abandoned)",
    labelnames=("outcome",),
)

POSTER_REQUESTS = Counter(
    "advisor_poster_requests_total",
    "Poster generations by outcome (cached, generated, no_artifact, timeout, failed)",
    labelnames=("outcome",),
)


def sanitize_path(path: str) -> str:
    """Reduce high-cardinality paths (e.g., /api/sessions/{id}) to a coarse label."""
    if not path:
        return "/"
    segs = [s for s in path.split("?")[0].split("/") if s]
    if not segs:
        return "/"
    if segs[0] == "api" and len(segs) > 1:
        return f"/api/{segs[1]}"
    return "/" + segs[0]


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        if request.url.path.startswith("/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        try:
            REQUEST_LATENCY.labels(
                method=request.method,
                path=sanitize_path(request.url.path),
                status=str(response.status_code),
            ).observe(elapsed)
        except Exception:
            # Never block the request due to metrics
            pass
        return response

    return middleware
