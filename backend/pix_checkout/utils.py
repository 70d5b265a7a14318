from __future__ import annotations

import asyncio
import ipaddress
import logging
import math
import time
from contextvars import ContextVar
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .settings import Settings

# Context variable for request ID (accessible throughout the request lifecycle)
request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")

# Provider callbacks and health checks must never be throttled
RATE_LIMIT_EXEMPT_PATHS = ("/api/webhook", "/health", "/metrics")


def add_cors(app: FastAPI, config: Settings) -> None:
    origins = config.allow_origins
    if not origins:
        # Same-origin deployments need no CORS middleware
        return
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials="*" not in origins,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "Accept", "X-Idempotency-Key"],
        expose_headers=["Content-Length", "X-Request-ID"],
        max_age=86400,
    )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        response = await call_next(request)
        headers = {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "no-referrer",
        }
        if request.url.scheme in {"https", "wss"}:
            headers["Strict-Transport-Security"] = "max-age=63072000; includeSubDomains"
        for key, value in headers.items():
            response.headers.setdefault(key, value)
        return response


def add_security_headers(app: FastAPI) -> None:
    app.add_middleware(SecurityHeadersMiddleware)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Tag every request with an ID for log correlation.

    Reuses an inbound X-Request-ID header when present, stores the value in
    `request_id_ctx` for the logging processors and echoes it on the response.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        structlog.contextvars.clear_contextvars()
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        request_id_ctx.set(request_id)
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class RequestIDLogFilter(logging.Filter):
    """Expose the request ID to stdlib log records as `%(request_id)s`."""

    def filter(self, record: logging.LogRecord) -> bool:
        request_id = request_id_ctx.get("")
        record.request_id = request_id if request_id else "-"  # type: ignore[attr-defined]
        return True


def add_request_id_tracing(app: FastAPI) -> None:
    app.add_middleware(RequestIDMiddleware)
    logging.getLogger().addFilter(RequestIDLogFilter())


def get_request_id() -> str:
    """Get the current request ID from context."""
    return request_id_ctx.get("")


class RateLimiter:
    """Token bucket per client, sharded over a few asyncio locks."""

    def __init__(self, config: Settings, shards: int = 16) -> None:
        self.config = config
        self._buckets: dict[str, dict[str, float]] = {}
        self._locks = [asyncio.Lock() for _ in range(max(1, shards))]
        self._last_cleanup = 0.0

    async def dispatch(self, request: Request, call_next):
        from .metrics import rate_limit_hits_total

        limit = self.config.RATE_LIMIT_REQUESTS
        window = self.config.RATE_LIMIT_WINDOW_SECONDS
        if (
            not self.config.RATE_LIMIT_ENABLED
            or limit <= 0
            or window <= 0
            or request.url.path.startswith(RATE_LIMIT_EXEMPT_PATHS)
        ):
            return await call_next(request)

        identifier = self._identifier_for(request)
        allowed, remaining, reset_in = await self._consume(
            identifier, limit, window, time.monotonic()
        )
        if not allowed:
            rate_limit_hits_total.inc()
            retry_after = max(1, math.ceil(reset_in))
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"error": "too_many_requests", "detail": "Too many requests"},
                headers={
                    "Retry-After": str(retry_after),
                    "X-RateLimit-Limit": str(limit),
                    "X-RateLimit-Remaining": "0",
                },
            )

        response = await call_next(request)
        response.headers.setdefault("X-RateLimit-Limit", str(limit))
        response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
        return response

    async def _consume(self, identifier: str, limit: int, window: int, now: float):
        refill_rate = limit / window
        lock = self._locks[hash(identifier) % len(self._locks)]
        async with lock:
            bucket = self._buckets.get(identifier)
            if not bucket:
                self._buckets[identifier] = {"tokens": float(limit - 1), "last": now}
                self._maybe_cleanup(now, window)
                return True, limit - 1, 0

            elapsed = max(0.0, now - bucket["last"])
            tokens = min(float(limit), bucket["tokens"] + elapsed * refill_rate)
            bucket["last"] = now

            if tokens >= 1:
                tokens -= 1
                bucket["tokens"] = tokens
                reset_in = (limit - tokens) / refill_rate if tokens < limit else 0
                self._maybe_cleanup(now, window)
                return True, int(tokens), reset_in

            bucket["tokens"] = tokens
            reset_in = (1 - tokens) / refill_rate if refill_rate else window
            self._maybe_cleanup(now, window)
            return False, 0, reset_in

    def reset(self) -> None:
        self._buckets.clear()
        self._last_cleanup = 0.0

    def _maybe_cleanup(self, now: float, window: int) -> None:
        """Remove idle buckets periodically to bound memory."""
        if now - self._last_cleanup < window:
            return
        stale_cutoff = now - (window * 3)
        for key in [k for k, meta in self._buckets.items() if meta.get("last", 0.0) < stale_cutoff]:
            self._buckets.pop(key, None)
        self._last_cleanup = now

    def _identifier_for(self, request: Request) -> str:
        """
        Client identifier for rate limiting.

        X-Forwarded-For is honoured only when the direct peer is a trusted proxy;
        the leftmost valid address in the chain is the original client.
        """
        direct_client_ip = request.client.host if request.client else None
        if not direct_client_ip or not self._is_trusted_proxy(direct_client_ip):
            return direct_client_ip or "anonymous"

        forwarded = request.headers.get("x-forwarded-for")
        if not forwarded:
            return direct_client_ip
        for ip in (part.strip() for part in forwarded.split(",")):
            if _is_valid_ip(ip):
                return ip
        return direct_client_ip

    def _is_trusted_proxy(self, ip: str) -> bool:
        trusted = self.config.TRUSTED_PROXIES.strip()
        if not trusted:
            return False
        if trusted == "*":
            return True

        try:
            ip_obj = ipaddress.ip_address(ip)
        except ValueError:
            return False

        for entry in trusted.split(","):
            entry = entry.strip()
            if not entry:
                continue
            try:
                if "/" in entry:
                    if ip_obj in ipaddress.ip_network(entry, strict=False):
                        return True
                elif ip_obj == ipaddress.ip_address(entry):
                    return True
            except ValueError:
                continue
        return False


def _is_valid_ip(ip: str) -> bool:
    try:
        ipaddress.ip_address(ip)
        return True
    except ValueError:
        return False


def add_rate_limiting(app: FastAPI, config: Settings) -> None:
    limiter = RateLimiter(config)
    app.state.rate_limiter = limiter

    @app.middleware("http")
    async def _rate_limit(request: Request, call_next):  # type: ignore[override]
        return await limiter.dispatch(request, call_next)
