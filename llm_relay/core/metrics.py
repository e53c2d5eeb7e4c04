"""Prometheus metrics for the relay."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# --- Metrics ---

APP_INFO = Info("llm_relay", "LLM relay application info")
APP_INFO.info({"version": "1.0.0", "name": "llm_relay"})

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
)

QUEUE_ITEMS = Counter(
    "relay_queue_items_total",
    "Queue items by lifecycle event",
    ["event"],  # enqueued | completed | requeued | failed | cancelled | rejected
)

PROVIDER_ATTEMPTS = Counter(
    "relay_provider_attempts_total",
    "Provider call attempts",
    ["provider", "outcome"],  # outcome: success | <error kind>
)

PROVIDER_LATENCY = Histogram(
    "relay_provider_call_seconds",
    "Provider call duration in seconds (all attempts of one engine call)",
    ["provider"],
    buckets=[0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 300],
)

BREAKER_OPENED = Counter(
    "relay_circuit_breaker_opened_total",
    "Circuit breaker openings",
    ["provider"],
)

FALLBACKS = Counter(
    "relay_fallbacks_total",
    "Strategy failures that moved the chain to the next provider",
    ["from_provider"],
)

GOVERNOR_IN_FLIGHT = Gauge(
    "relay_governor_in_flight",
    "Permits currently held per governor key",
    ["key"],
)

SERIAL_MESSAGES = Counter(
    "relay_serial_messages_total",
    "Messages handled by the strict serialization controller",
    ["outcome"],  # acked | retried | dropped
)


# --- Middleware ---

# Normalize dynamic path segments to reduce cardinality
_PATH_PREFIXES = ("/api/v1/queue/accounts/",)


def _normalize_path(path: str) -> str:
    """Replace numeric IDs in paths with {id} to avoid high cardinality."""
    for prefix in _PATH_PREFIXES:
        if path.startswith(prefix):
            rest = path[len(prefix) :]
            parts = rest.split("/", 1)
            if parts[0].isdigit():
                tail = f"/{parts[1]}" if len(parts) > 1 else ""
                if tail.startswith("/requests/") and tail.count("/") == 2:
                    tail = "/requests/{queue_id}"
                return f"{prefix}{{id}}{tail}"
    return path


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Collect HTTP request metrics for Prometheus."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        path = _normalize_path(request.url.path)

        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start

        REQUEST_COUNT.labels(method=method, path=path, status=response.status_code).inc()
        REQUEST_DURATION.labels(method=method, path=path).observe(duration)

        return response


def metrics_response() -> Response:
    """Generate Prometheus /metrics response."""
    return Response(
        content=generate_latest(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
