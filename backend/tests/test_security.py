"""Security tests for the checkout API."""

from __future__ import annotations

import pytest
from backend.pix_checkout.main import create_app
from backend.pix_checkout.utils import RateLimiter, add_cors, add_rate_limiting
from fastapi import FastAPI
from fastapi.testclient import TestClient


def _limited_app(config) -> FastAPI:
    app = FastAPI()
    add_rate_limiting(app, config)

    @app.get("/test")
    def test_endpoint():
        return {"ok": True}

    @app.post("/api/webhook")
    def webhook():
        return {"status": "ok"}

    return app


class TestInputValidation:
    """Malformed input never reaches the provider."""

    @pytest.mark.parametrize(
        "payload",
        [
            {"amount": "'; DROP TABLE charges; --", "orderId": "1"},
            {"amount": "<script>alert('XSS')</script>", "orderId": "1"},
            {"amount": -5, "orderId": "1"},
            {"amount": "NaN", "orderId": "1"},
        ],
    )
    def test_bad_amounts_rejected(self, live_client, provider, payload):
        response = live_client.post("/api/generate-pix", json=payload)
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_amount"
        assert provider.create_calls == []

    def test_oversized_payment_id_rejected(self, simulated_client):
        response = simulated_client.get("/api/check-payment/" + "9" * 200)
        assert response.status_code == 422

    @pytest.mark.parametrize("payment_id", ["123%3Faccess_token%3Dzzz", "..", "12.3", "dev_1%20OR%201"])
    def test_malformed_payment_id_never_reaches_provider(self, live_client, provider, payment_id):
        response = live_client.get(f"/api/check-payment/{payment_id}")
        assert response.status_code in {404, 422}
        assert provider.fetch_calls == []

    def test_unsigned_webhook_with_malformed_id_is_ignored(self, make_settings, store, provider):
        config = make_settings(MERCADO_PAGO_ACCESS_TOKEN="APP_USR-live")
        with TestClient(create_app(config, gateway=provider, store=store)) as client:
            response = client.post("/api/webhook", json={"data": {"id": "123?access_token=zzz"}})
        assert response.json() == {"status": "ignored"}
        assert provider.fetch_calls == []

    def test_path_traversal_is_not_found(self, simulated_client):
        response = simulated_client.get("/api/check-payment/..%2F..%2Fetc%2Fpasswd")
        assert response.status_code in {400, 404, 422}
        assert "root:" not in response.text


class TestHeaders:
    def test_security_headers_present(self, simulated_client):
        response = simulated_client.get("/health")
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Referrer-Policy"] == "no-referrer"

    def test_no_hsts_over_plain_http(self, simulated_client):
        response = simulated_client.get("/health")
        assert "Strict-Transport-Security" not in response.headers

    def test_not_found_does_not_leak_internals(self, simulated_client):
        response = simulated_client.get("/api/does-not-exist")
        assert response.status_code == 404
        text = response.text.lower()
        assert "traceback" not in text
        assert "mercado_pago_access_token" not in text


class TestCORS:
    def test_configured_origin_is_allowed(self, make_settings):
        app = FastAPI()
        add_cors(app, make_settings(FRONTEND_ORIGIN="https://forneiro.example/"))

        @app.get("/ping")
        def ping():
            return {"ok": True}

        client = TestClient(app)
        response = client.options(
            "/ping",
            headers={
                "Origin": "https://forneiro.example",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "X-Idempotency-Key",
            },
        )
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "https://forneiro.example"
        assert response.headers["access-control-allow-credentials"] == "true"

    def test_other_origin_gets_no_cors_headers(self, make_settings):
        app = FastAPI()
        add_cors(app, make_settings(FRONTEND_ORIGIN="https://forneiro.example"))

        @app.get("/ping")
        def ping():
            return {"ok": True}

        response = TestClient(app).get("/ping", headers={"Origin": "https://evil.example"})
        assert "access-control-allow-origin" not in response.headers

    def test_no_origin_configured_installs_no_middleware(self, make_settings):
        app = FastAPI()
        add_cors(app, make_settings(FRONTEND_ORIGIN=""))
        assert app.user_middleware == []


class TestRateLimiting:
    def test_limit_returns_429(self, make_settings):
        client = TestClient(
            _limited_app(make_settings(RATE_LIMIT_ENABLED=True, RATE_LIMIT_REQUESTS=3))
        )
        statuses = [client.get("/test").status_code for _ in range(4)]
        assert statuses == [200, 200, 200, 429]

        blocked = client.get("/test")
        assert blocked.json()["error"] == "too_many_requests"
        assert int(blocked.headers["Retry-After"]) >= 1
        assert blocked.headers["X-RateLimit-Remaining"] == "0"

    def test_webhook_is_exempt(self, make_settings):
        client = TestClient(
            _limited_app(make_settings(RATE_LIMIT_ENABLED=True, RATE_LIMIT_REQUESTS=1))
        )
        assert all(client.post("/api/webhook").status_code == 200 for _ in range(5))

    def test_disabled_limiter_passes_everything(self, make_settings):
        client = TestClient(
            _limited_app(make_settings(RATE_LIMIT_ENABLED=False, RATE_LIMIT_REQUESTS=1))
        )
        assert all(client.get("/test").status_code == 200 for _ in range(5))

    def test_reset_clears_buckets(self, make_settings):
        app = _limited_app(make_settings(RATE_LIMIT_ENABLED=True, RATE_LIMIT_REQUESTS=1))
        client = TestClient(app)
        assert client.get("/test").status_code == 200
        assert client.get("/test").status_code == 429
        app.state.rate_limiter.reset()
        assert client.get("/test").status_code == 200

    def test_full_app_limits_checkout_routes(self, make_settings, store):
        config = make_settings(RATE_LIMIT_ENABLED=True, RATE_LIMIT_REQUESTS=2)
        with TestClient(create_app(config, store=store)) as client:
            codes = [client.get("/api/check-payment/dev_missing").status_code for _ in range(3)]
            health = client.get("/health")
        assert codes == [404, 404, 429]
        assert health.status_code == 200


class TestXForwardedFor:
    """X-Forwarded-For is honoured only behind a trusted proxy."""

    def test_spoofed_header_ignored_without_trusted_proxy(self, make_settings):
        client = TestClient(
            _limited_app(
                make_settings(RATE_LIMIT_ENABLED=True, RATE_LIMIT_REQUESTS=2, TRUSTED_PROXIES="")
            )
        )
        codes = [
            client.get("/test", headers={"X-Forwarded-For": f"1.2.3.{i}"}).status_code
            for i in range(3)
        ]
        assert codes == [200, 200, 429]

    def test_trusted_proxy_buckets_by_forwarded_client(self, make_settings):
        client = TestClient(
            _limited_app(
                make_settings(RATE_LIMIT_ENABLED=True, RATE_LIMIT_REQUESTS=1, TRUSTED_PROXIES="*")
            )
        )
        first = client.get("/test", headers={"X-Forwarded-For": "1.2.3.4"})
        second = client.get("/test", headers={"X-Forwarded-For": "5.6.7.8, 10.0.0.1"})
        repeat = client.get("/test", headers={"X-Forwarded-For": "1.2.3.4"})
        assert (first.status_code, second.status_code, repeat.status_code) == (200, 200, 429)

    def test_trusted_proxy_cidr(self, make_settings):
        limiter = RateLimiter(make_settings(TRUSTED_PROXIES="10.0.0.0/8, 192.168.1.1"))
        assert limiter._is_trusted_proxy("10.20.30.40")
        assert limiter._is_trusted_proxy("192.168.1.1")
        assert not limiter._is_trusted_proxy("192.168.1.2")
        assert not limiter._is_trusted_proxy("not-an-ip")


class TestProductionRequirements:
    def test_production_without_origin_or_live_token_refuses(self, make_settings, store):
        config = make_settings(ENVIRONMENT="production", FRONTEND_ORIGIN="")
        with pytest.raises(RuntimeError) as excinfo:
            create_app(config, store=store)
        message = str(excinfo.value)
        assert "FRONTEND_ORIGIN" in message
        assert "MERCADO_PAGO_ACCESS_TOKEN" in message

    def test_production_rejects_wildcard_origin(self, make_settings, store, provider):
        config = make_settings(
            ENVIRONMENT="production",
            FRONTEND_ORIGIN="*",
            MERCADO_PAGO_ACCESS_TOKEN="APP_USR-live",
        )
        with pytest.raises(RuntimeError, match="cannot be"):
            create_app(config, gateway=provider, store=store)

    def test_production_with_live_config_builds(self, make_settings, store, provider):
        config = make_settings(
            ENVIRONMENT="production",
            FRONTEND_ORIGIN="https://forneiro.example",
            MERCADO_PAGO_ACCESS_TOKEN="APP_USR-live",
        )
        app = create_app(config, gateway=provider, store=store)
        assert app.state.payment_service.mode == "live"
