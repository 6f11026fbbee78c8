from __future__ import annotations

"""Prometheus instruments for the HTTP layer and the retrieval pipeline."""

import time

from fastapi import Request
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

from src.app.settings import settings

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)
EMBEDDING_RETRIES = Counter(
    "rag_embedding_retries_total",
    "Embedding batch attempts that failed and were retried",
)
RETRIEVAL_LATENCY = Histogram(
    "rag_retrieval_latency_seconds",
    "End-to-end retrieval latency in seconds",
    ["method"],
)
INJECTION_FLAGS = Counter(
    "rag_injection_flags_total",
    "Retrieved snippets flagged for prompt-injection patterns",
)
RATE_LIMITED = Counter(
    "rag_rate_limited_total",
    "Retrieval requests rejected by the per-tenant rate limiter",
)


def _route_label(request: Request) -> str:
    # templated path keeps document ids out of label values
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


async def metrics_middleware(request: Request, call_next):
    if not settings.metrics_enabled or request.url.path == "/metrics":
        return await call_next(request)
    start = time.monotonic()
    status = 500
    try:
        response = await call_next(request)
        status = response.status_code
        return response
    finally:
        path = _route_label(request)
        REQUEST_COUNT.labels(request.method, path, str(status)).inc()
        REQUEST_LATENCY.labels(request.method, path).observe(time.monotonic() - start)


def metrics_response() -> Response:
    if not settings.metrics_enabled:
        return Response(status_code=404)
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
