"""Tests for the print forwarding endpoints."""

from __future__ import annotations

import pytest
from backend.pix_checkout.print_sink import SAMPLE_PRINT_ORDER

ORDER = {"orderId": "1001", "items": [{"name": "Pizza Portuguesa (M)", "quantity": 1}]}


@pytest.mark.parametrize("path", ["/api/print", "/api/print-order"])
def test_forwards_order(live_client, print_sink, path):
    resp = live_client.post(path, json=ORDER)
    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "status": 200, "upstream": {"printed": True}}
    assert print_sink.requests == [ORDER]


def test_print_test_sends_sample_order(live_client, print_sink):
    resp = live_client.post("/api/print-test")
    assert resp.status_code == 200
    assert print_sink.requests == [SAMPLE_PRINT_ORDER]


def test_print_echo_returns_what_was_sent(live_client, print_sink):
    resp = live_client.post("/api/print-echo", json=ORDER)
    assert resp.status_code == 200
    assert resp.json() == {
        "sent": ORDER,
        "upstream": {"status": 200, "body": {"printed": True}},
    }


def test_upstream_error_is_502(live_client, print_sink):
    print_sink.status_code = 500
    resp = live_client.post("/api/print", json=ORDER)
    assert resp.status_code == 502
    body = resp.json()
    assert body["error"] == "print_forward_failed"
    assert body["detail"]["status"] == 500
    assert body["detail"]["body"] == {"printed": False}


def test_network_error_is_502(live_client, print_sink):
    print_sink.fail_network = True
    resp = live_client.post("/api/print", json=ORDER)
    assert resp.status_code == 502
    assert resp.json()["error"] == "print_forward_failed"


def test_not_configured_is_503(simulated_client):
    resp = simulated_client.post("/api/print", json=ORDER)
    assert resp.status_code == 503
    assert resp.json()["error"] == "print_sink_not_configured"


def test_order_must_be_an_object(live_client, print_sink):
    resp = live_client.post("/api/print", json=[1, 2, 3])
    assert resp.status_code == 400
    assert print_sink.requests == []
