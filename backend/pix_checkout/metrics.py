"""Prometheus metrics for monitoring and observability."""

from __future__ import annotations

import re
import time
from collections.abc import Callable
from functools import lru_cache

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# ==============================================================================
# APPLICATION INFO
# ==============================================================================

app_info = Info("forneiro_pix", "Forneiro PIX checkout API information")
app_info.info({"service": "forneiro-pix-api"})

# ==============================================================================
# HTTP METRICS
# ==============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

http_requests_in_progress = Gauge(
    "http_requests_in_progress",
    "HTTP requests currently in progress",
    ["method", "endpoint"],
)

# ==============================================================================
# PAYMENT METRICS
# ==============================================================================

pix_charges_created_total = Counter(
    "pix_charges_created_total",
    "PIX charges handed back to the storefront",
    ["mode"],  # live | simulated | local_fallback
)

pix_charge_errors_total = Counter(
    "pix_charge_errors_total",
    "PIX charge creation failures",
    ["reason"],
)

payment_status_checks_total = Counter(
    "payment_status_checks_total",
    "Charge status observations",
    ["source"],  # poll | webhook | simulated
)

payment_webhooks_total = Counter(
    "payment_webhooks_total",
    "Provider webhook deliveries",
    ["result"],
)

print_forwards_total = Counter(
    "print_forwards_total",
    "Orders forwarded to the print webhook",
    ["result"],
)

payment_fanout_events_total = Counter(
    "payment_fanout_events_total",
    "payment_update events published to real-time subscribers",
)

payment_ws_subscribers = Gauge(
    "payment_ws_subscribers",
    "Currently connected real-time subscribers",
)

provider_request_duration_seconds = Histogram(
    "provider_request_duration_seconds",
    "Mercado Pago API call duration in seconds",
    ["operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ==============================================================================
# RATE LIMITER METRICS
# ==============================================================================

rate_limit_hits_total = Counter(
    "rate_limit_hits_total",
    "Total rate limit hits (requests blocked)",
)


@lru_cache(maxsize=2048)
def normalize_endpoint(path: str) -> str:
    """
    Normalize endpoint path to reduce cardinality.

    Examples:
        /api/check-payment/123456789 -> /api/check-payment/{id}
        /status-pagamento/dev_4f1c2a -> /status-pagamento/{id}
    """
    path = re.sub(r"/dev_[0-9a-fA-F]+", "/{id}", path)
    path = re.sub(r"/\d+", "/{id}", path)
    path = re.sub(r"/[a-zA-Z0-9_-]{20,}", "/{id}", path)
    return path


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware to track HTTP request metrics."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        endpoint = normalize_endpoint(request.url.path)
        http_requests_in_progress.labels(method=method, endpoint=endpoint).inc()
        start_time = time.time()
        status = "500"
        try:
            response = await call_next(request)
            status = str(response.status_code)
            return response
        finally:
            http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(
                time.time() - start_time
            )
            http_requests_total.labels(method=method, endpoint=endpoint, status=status).inc()
            http_requests_in_progress.labels(method=method, endpoint=endpoint).dec()


def get_metrics() -> Response:
    """Generate Prometheus metrics response."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


__all__ = [
    "PrometheusMiddleware",
    "get_metrics",
    "normalize_endpoint",
    "pix_charges_created_total",
    "pix_charge_errors_total",
    "payment_status_checks_total",
    "payment_webhooks_total",
    "print_forwards_total",
    "payment_fanout_events_total",
    "payment_ws_subscribers",
    "provider_request_duration_seconds",
    "rate_limit_hits_total",
]
