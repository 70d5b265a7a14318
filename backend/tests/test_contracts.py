"""Tests for create-charge body normalization."""

from __future__ import annotations

from decimal import Decimal

import pytest
from backend.pix_checkout.contracts import (
    RequestShapeError,
    extract_webhook_charge_id,
    normalize_charge_request,
    parse_amount,
)


def test_amount_order_shape():
    request = normalize_charge_request(
        {
            "amount": 45.9,
            "orderId": 1001,
            "orderData": {"customer": {"name": "Maria", "phone": 11999990000}},
        }
    )
    assert request.amount == Decimal("45.90")
    assert request.order_id == "1001"
    assert request.customer is not None
    assert request.customer.phone == "11999990000"


def test_transaction_shape_order_id_sources():
    from_field = normalize_charge_request(
        {"transaction_amount": "30", "description": "Pedido", "orderId": "A1"}
    )
    from_order_data = normalize_charge_request(
        {"transaction_amount": "30", "description": "Pedido", "orderData": {"orderId": "B2"}}
    )
    from_description = normalize_charge_request(
        {"transaction_amount": "30", "description": "Pedido Forneiro #C3"}
    )
    assert from_field.order_id == "A1"
    assert from_order_data.order_id == "B2"
    assert from_description.order_id == "C3"
    assert from_description.description == "Pedido Forneiro #C3"


@pytest.mark.parametrize("amount", [0, -1, "abc", None, True, float("nan"), float("inf"), "0.001"])
def test_invalid_amounts(amount):
    with pytest.raises(RequestShapeError) as exc_info:
        normalize_charge_request({"amount": amount, "orderId": "1"})
    assert exc_info.value.code == "invalid_amount"


def test_amount_rounds_half_up_to_cents():
    assert parse_amount("10.005") == Decimal("10.01")
    assert parse_amount(45.9) == Decimal("45.90")


@pytest.mark.parametrize("order_id", [None, "", "   ", {"a": 1}])
def test_missing_order_id(order_id):
    with pytest.raises(RequestShapeError) as exc_info:
        normalize_charge_request({"amount": 10, "orderId": order_id})
    assert exc_info.value.code == "missing_order_id"


def test_transaction_shape_without_any_order_id():
    with pytest.raises(RequestShapeError) as exc_info:
        normalize_charge_request({"transaction_amount": 10, "description": "sem id"})
    assert exc_info.value.code == "missing_order_id"


@pytest.mark.parametrize(
    "body",
    [[], "text", {}, {"total": 10}, {"transaction_amount": 10}],
)
def test_unknown_shapes_are_rejected(body):
    with pytest.raises(RequestShapeError) as exc_info:
        normalize_charge_request(body)
    assert exc_info.value.code == "invalid_request"


def test_webhook_charge_id_extraction():
    assert extract_webhook_charge_id({"data": {"id": 123}}) == "123"
    assert extract_webhook_charge_id({"id": "456"}) == "456"
    assert extract_webhook_charge_id({}, {"data.id": "789"}) == "789"
    assert extract_webhook_charge_id({"action": "payment.updated"}) is None
    assert extract_webhook_charge_id([1, 2]) is None


def test_webhook_charge_id_skips_malformed_ids():
    assert extract_webhook_charge_id({"data": {"id": "123?x=y"}}) is None
    assert extract_webhook_charge_id({"data": {"id": ".."}, "id": "456"}) == "456"
    assert extract_webhook_charge_id({}, {"data.id": "../users/me", "id": "789"}) == "789"
    assert extract_webhook_charge_id({"id": "dev_4f1c2a"}) == "dev_4f1c2a"
