from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import sentry_sdk
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from sentry_sdk.integrations.fastapi import FastApiIntegration

from .api.routes import payments as payments_routes
from .api.routes import printing as printing_routes
from .api.routes import realtime as realtime_routes
from .api.routes import webhooks as webhooks_routes
from .broadcaster import ChargeBroadcaster
from .errors import register_error_handlers
from .health import HealthChecker
from .logging_config import configure_structlog, get_logger
from .metrics import PrometheusMiddleware, get_metrics
from .payments import PaymentProvider, SimulatedPixGateway, build_live_gateway, build_simulator
from .print_sink import PrintForwarder
from .service import PixPaymentService
from .settings import Settings, settings
from .storage import ChargeStore
from .utils import (
    add_cors,
    add_rate_limiting,
    add_request_id_tracing,
    add_security_headers,
)

logger = get_logger(__name__)


def _init_sentry(config: Settings) -> None:
    if not config.SENTRY_DSN:
        return
    sentry_sdk.init(
        dsn=config.SENTRY_DSN,
        environment=config.SENTRY_ENVIRONMENT,
        release=config.SENTRY_RELEASE or f"{config.SERVICE_NAME}@{config.VERSION}",
        integrations=[FastApiIntegration()],
        traces_sample_rate=config.SENTRY_TRACES_SAMPLE_RATE,
    )


async def _validate_credential(config: Settings, service: PixPaymentService) -> None:
    """Refuse to start when a live Mercado Pago credential is rejected."""
    if service.gateway is None or not config.VALIDATE_CREDENTIAL_ON_STARTUP:
        return
    valid = await service.gateway.validate_credential()
    if not valid:
        logger.error("provider_credential_invalid", token=config.masked_token)
        raise RuntimeError(
            "MERCADO_PAGO_ACCESS_TOKEN was rejected by Mercado Pago; refusing to start"
        )
    logger.info("provider_credential_valid", token=config.masked_token)


def create_app(
    config: Settings | None = None,
    *,
    gateway: PaymentProvider | None = None,
    simulator: SimulatedPixGateway | None = None,
    printer: PrintForwarder | None = None,
    store: ChargeStore | None = None,
) -> FastAPI:
    """
    Build the payment API.

    Collaborators default to what `config` describes; tests inject fakes
    (a gateway over `httpx.MockTransport`, a temp-dir store, ...).
    """
    config = config or settings
    config.check_production_requirements()
    _init_sentry(config)

    store = store or ChargeStore(config.charges_path)
    broadcaster = ChargeBroadcaster(
        include_raw=config.FANOUT_INCLUDE_RAW, send_timeout=config.FANOUT_SEND_TIMEOUT_SECONDS
    )
    if gateway is None:
        gateway = build_live_gateway(config)
    printer = printer or PrintForwarder(
        config.PRINT_WEBHOOK_URL, timeout=config.PRINT_TIMEOUT_SECONDS
    )
    service = PixPaymentService(
        config=config,
        store=store,
        broadcaster=broadcaster,
        simulator=simulator or build_simulator(config),
        gateway=gateway,
        printer=printer,
    )
    health_checker = HealthChecker(config, store)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await _validate_credential(config, service)
        logger.info(
            "service_started",
            mode=service.mode,
            charges_path=str(store.path),
            print_sink=printer.configured,
        )
        try:
            yield
        finally:
            await service.close()
            logger.info("service_stopped")

    app = FastAPI(
        title="Forneiro PIX API",
        version=config.VERSION,
        description="PIX checkout, payment status and print forwarding for the Forneiro storefront",
        lifespan=lifespan,
    )
    app.state.settings = config
    app.state.charge_store = store
    app.state.broadcaster = broadcaster
    app.state.payment_service = service
    app.state.print_forwarder = printer
    app.state.health_checker = health_checker

    add_cors(app, config)
    add_security_headers(app)
    add_request_id_tracing(app)
    add_rate_limiting(app, config)
    app.add_middleware(PrometheusMiddleware)
    register_error_handlers(app)

    app.include_router(payments_routes.router)
    app.include_router(webhooks_routes.router)
    app.include_router(printing_routes.router)
    app.include_router(realtime_routes.router)

    @app.get("/")
    async def root() -> dict[str, Any]:
        return {
            "service": config.SERVICE_NAME,
            "version": config.VERSION,
            "provider_mode": service.mode,
            "routes": [
                "POST /api/generate-pix",
                "GET /api/check-payment/{id}",
                "GET /status-pagamento/{id}",
                "GET /api/payment/{id}",
                "POST /api/webhook",
                "POST /api/print",
                "WS /ws",
            ],
        }

    @app.get("/health")
    async def health():
        """Return service health including dependency checks."""
        health_status = await health_checker.check_all()
        status_code = 200 if health_status["status"] == "healthy" else 503
        body = {
            "status": health_status["status"],
            "timestamp": health_status.get("timestamp"),
            "checks": health_status.get("checks", {}),
            "service": config.SERVICE_NAME,
            "version": config.VERSION,
        }
        if not config.DEBUG:
            body = _scrub_health_details(body)
        return JSONResponse(content=body, status_code=status_code)

    @app.get("/metrics")
    def metrics():
        """Expose Prometheus metrics."""
        try:
            return get_metrics()
        except Exception:  # pragma: no cover
            logger.exception("Metrics export failed")
            raise HTTPException(status_code=503, detail="metrics unavailable")

    return app


def _scrub_health_details(payload: dict[str, Any]) -> dict[str, Any]:
    """Remove error fields before returning health details outside debug mode."""

    def _scrub(value: Any) -> Any:
        if isinstance(value, dict):
            return {
                key: _scrub(inner)
                for key, inner in value.items()
                if key not in {"error", "error_type", "traceback"}
            }
        if isinstance(value, list):
            return [_scrub(item) for item in value]
        return value

    return _scrub(payload)


# Configure structured logging (must be done before any logging calls)
configure_structlog(json_logs=not settings.DEBUG, config=settings)

app = create_app()
