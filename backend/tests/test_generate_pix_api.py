"""Tests for POST /api/generate-pix."""

from __future__ import annotations

import asyncio
import json
import re

import pytest
from backend.pix_checkout.errors import PaymentAPIError, payment_api_error_handler
from backend.pix_checkout.main import create_app
from backend.pix_checkout.payments.base import (
    InvalidProviderResponse,
    ProviderConfigurationError,
    ProviderRejectedError,
    ProviderTransientError,
)
from backend.pix_checkout.storage import ChargeStore
from fastapi.testclient import TestClient

ORDER_DATA = {
    "orderId": "1001",
    "customer": {"name": "Maria Souza", "phone": "(11) 99999-0000"},
    "items": [{"name": "Pizza Margherita (G)", "quantity": 1, "price": 45.9}],
    "totals": {"total": 45.9},
}


def _live_app(make_settings, store, provider, **overrides):
    config = make_settings(MERCADO_PAGO_ACCESS_TOKEN="APP_USR-1234567890-live", **overrides)
    return create_app(config, gateway=provider, store=store)


class FailingStore(ChargeStore):
    async def upsert(self, charge_id, fields, *, observed_at=None):
        raise OSError("disk full")


class TestSimulatedCharges:
    def test_scenario_a_test_credential_auto_approves(self, make_settings, store):
        config = make_settings(MERCADO_PAGO_ACCESS_TOKEN="TEST-123456", DEV_AUTO_APPROVE_MS=100)
        app = create_app(config, store=store)

        with TestClient(app) as client, client.websocket_connect("/ws") as ws:
            ws.send_text("ping")
            assert ws.receive_json() == {"type": "pong"}

            resp = client.post("/api/generate-pix", json={"amount": 45.90, "orderId": "1001"})
            assert resp.status_code == 200
            body = resp.json()
            assert body["paymentId"].startswith("dev_")
            assert body["qrCodeBase64"]
            assert body["pixCopiaECola"].startswith("000201")
            assert body["status"] == "pending"

            pending = ws.receive_json()
            assert pending["type"] == "payment_update"
            assert pending["payload"] == {
                "id": body["paymentId"],
                "orderId": "1001",
                "status": "pending",
            }

            approved = ws.receive_json()
            assert approved["payload"]["id"] == body["paymentId"]
            assert approved["payload"]["status"] == "approved"

            status = client.get(f"/api/check-payment/{body['paymentId']}")
            assert status.json() == {"status": "approved"}

        record = asyncio.run(store.get(body["paymentId"]))
        assert record["status"] == "approved"
        assert record["simulated"] is True

    def test_missing_credential_without_auto_approve_stays_pending(self, simulated_client):
        resp = simulated_client.post("/api/generate-pix", json={"amount": "12.50", "orderId": "77"})
        assert resp.status_code == 200
        payment_id = resp.json()["paymentId"]
        assert payment_id.startswith("dev_")

        status = simulated_client.get(f"/api/check-payment/{payment_id}")
        assert status.json() == {"status": "pending"}

    def test_persistence_failure_is_swallowed(self, make_settings, tmp_path):
        app = create_app(make_settings(), store=FailingStore(tmp_path / "charges.json"))
        with TestClient(app) as client:
            resp = client.post("/api/generate-pix", json={"amount": 10, "orderId": "1"})
        assert resp.status_code == 200
        assert resp.json()["paymentId"].startswith("dev_")


class TestValidation:
    def test_scenario_c_zero_amount_never_reaches_provider(self, live_client, provider):
        resp = live_client.post("/api/generate-pix", json={"amount": 0, "orderId": "1001"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_amount"
        assert provider.create_calls == []

    def test_missing_order_id(self, live_client, provider):
        resp = live_client.post("/api/generate-pix", json={"amount": 10})
        assert resp.status_code == 400
        assert resp.json()["error"] == "missing_order_id"
        assert provider.create_calls == []

    def test_unknown_shape(self, live_client, provider):
        resp = live_client.post("/api/generate-pix", json={"total": 10, "order": "1"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_request"
        assert provider.create_calls == []

    def test_non_json_body(self, live_client):
        resp = live_client.post(
            "/api/generate-pix", content=b"amount=10", headers={"Content-Type": "text/plain"}
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_request"


class TestLiveCharges:
    def test_creates_and_persists_charge(self, live_client, provider, store):
        resp = live_client.post(
            "/api/generate-pix",
            json={"amount": 45.9, "orderId": "1001", "orderData": ORDER_DATA},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["qrCodeBase64"]
        assert body["pixCopiaECola"]
        assert body["status"] == "pending"

        call = provider.create_calls[0]
        assert str(call["amount"]) == "45.90"
        assert call["correlation_id"] == "1001"
        assert call["description"] == "Pedido Forneiro #1001"
        assert call["payer"]["email"] == "maria.11999990000@clientes.forneiro.app"
        assert re.fullmatch(r"1001-\d{13}", call["idempotency_key"])

        record = asyncio.run(store.get(body["paymentId"]))
        assert record["order_id"] == "1001"
        assert record["order_data"] == ORDER_DATA
        assert record["amount"] == "45.90"
        assert record["simulated"] is False
        assert record["idempotency_key"] == call["idempotency_key"]
        # The pseudo payer address is never persisted.
        assert "clientes.forneiro.app" not in str(record)

    def test_transaction_amount_shape(self, live_client, provider):
        resp = live_client.post(
            "/api/generate-pix",
            json={"transaction_amount": 30, "description": "Pedido Forneiro #2002"},
        )
        assert resp.status_code == 200
        assert provider.create_calls[0]["correlation_id"] == "2002"
        assert provider.create_calls[0]["description"] == "Pedido Forneiro #2002"

    def test_same_idempotency_key_yields_one_provider_charge(self, live_client, provider):
        headers = {"X-Idempotency-Key": "checkout-1001-attempt-1"}
        first = live_client.post(
            "/api/generate-pix", json={"amount": 45.9, "orderId": "1001"}, headers=headers
        )
        second = live_client.post(
            "/api/generate-pix", json={"amount": 45.9, "orderId": "1001"}, headers=headers
        )
        assert first.json()["paymentId"] == second.json()["paymentId"]
        assert len(provider.by_key) == 1
        assert {c["idempotency_key"] for c in provider.create_calls} == {"checkout-1001-attempt-1"}

    def test_transient_error_retries_once_with_fallback(self, live_client, provider):
        provider.create_errors.append(ProviderTransientError("connection reset"))
        resp = live_client.post("/api/generate-pix", json={"amount": 10, "orderId": "5"})
        assert resp.status_code == 200
        assert [c["fallback"] for c in provider.create_calls] == [False, True]
        keys = {c["idempotency_key"] for c in provider.create_calls}
        assert len(keys) == 1

    def test_transient_error_after_fallback_is_502(self, live_client, provider):
        provider.create_errors.extend(
            [ProviderTransientError("down", detail="a"), ProviderTransientError("down", detail="b")]
        )
        resp = live_client.post("/api/generate-pix", json={"amount": 10, "orderId": "5"})
        assert resp.status_code == 502
        assert resp.json() == {"error": "provider_unavailable", "detail": "b"}
        assert len(provider.create_calls) == 2

    def test_provider_rejection_is_400(self, live_client, provider):
        provider.create_errors.append(
            ProviderRejectedError("bad payer", status_code=400, detail={"message": "bad payer"})
        )
        resp = live_client.post("/api/generate-pix", json={"amount": 10, "orderId": "5"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "provider_rejected"
        assert resp.json()["detail"] == {"message": "bad payer"}
        assert len(provider.create_calls) == 1

    def test_missing_pix_data_is_502(self, live_client, provider):
        provider.create_errors.append(InvalidProviderResponse("no qr", detail={"id": 1}))
        resp = live_client.post("/api/generate-pix", json={"amount": 10, "orderId": "5"})
        assert resp.status_code == 502
        assert resp.json()["error"] == "pix_data_missing"

    def test_merchant_not_enabled_is_400(self, live_client, provider):
        provider.create_errors.append(
            ProviderConfigurationError("Collector user without key enabled for QR render")
        )
        resp = live_client.post("/api/generate-pix", json={"amount": 10, "orderId": "5"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "payment_method_not_enabled"

    def test_merchant_not_enabled_degrades_to_local_qr(self, make_settings, store, provider):
        provider.create_errors.append(
            ProviderConfigurationError("Collector user without key enabled for QR render")
        )
        app = _live_app(make_settings, store, provider, ENABLE_LOCAL_QR_FALLBACK=True)
        with TestClient(app) as client:
            resp = client.post("/api/generate-pix", json={"amount": 10, "orderId": "5"})
        assert resp.status_code == 200
        assert resp.json()["paymentId"].startswith("dev_")
        assert resp.json()["qrCodeBase64"]

    def test_persistence_failure_still_returns_charge(self, make_settings, tmp_path, provider):
        app = _live_app(make_settings, FailingStore(tmp_path / "charges.json"), provider)
        with TestClient(app) as client:
            resp = client.post("/api/generate-pix", json={"amount": 10, "orderId": "5"})
        assert resp.status_code == 200
        assert resp.json()["paymentId"] == "9001"


def test_invalid_credential_refuses_to_start(make_settings, store, provider):
    provider.credential_valid = False
    app = _live_app(make_settings, store, provider)
    with pytest.raises(RuntimeError, match="refusing to start"):
        with TestClient(app):
            pass


def test_payment_api_error_handler_renders_error_body():
    response = asyncio.run(
        payment_api_error_handler(None, PaymentAPIError(502, "provider_unavailable", {"status": 503}))
    )
    assert response.status_code == 502
    assert json.loads(response.body) == {
        "error": "provider_unavailable",
        "detail": {"status": 503},
    }

    bare = asyncio.run(payment_api_error_handler(None, PaymentAPIError(404, "payment_not_found")))
    assert json.loads(bare.body) == {"error": "payment_not_found"}
