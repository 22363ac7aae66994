from __future__ import annotations

from typing import Any

import httpx
import pytest

from pageforge_billing import stripe_api
from pageforge_billing.stripe_api import StripeClient


class _Response:
    def __init__(self, status_code: int, payload: Any):
        self.status_code = status_code
        self._payload = payload
        self.text = str(payload)

    def json(self):
        return self._payload


@pytest.fixture
def captured(monkeypatch):
    calls: list[dict[str, Any]] = []
    responses: list[_Response] = []

    def _fake(method):
        def _call(url, **kwargs):
            calls.append({"method": method, "url": url, **kwargs})
            return responses.pop(0) if responses else _Response(200, {"id": "obj_1", "url": "https://stripe.test/x"})

        return _call

    monkeypatch.setattr(stripe_api.httpx, "post", _fake("POST"))
    monkeypatch.setattr(stripe_api.httpx, "get", _fake("GET"))
    return calls, responses


def test_checkout_session_payload(captured):
    calls, _ = captured
    client = StripeClient("sk_test_abc", timeout_seconds=7)

    ok, data = client.create_checkout_session(
        plan="monthly",
        price_id="price_123",
        checkout_mode="subscription",
        success_url="https://app.test/success?session_id={CHECKOUT_SESSION_ID}",
        cancel_url="https://app.test/?cancelled=true",
        email="owner@example.com",
    )
    assert ok is True
    assert data["id"] == "obj_1"

    call = calls[0]
    assert call["url"] == "https://api.stripe.com/v1/checkout/sessions"
    assert call["headers"]["Authorization"] == "Bearer sk_test_abc"
    assert call["timeout"] == 7
    assert call["data"] == {
        "mode": "subscription",
        "success_url": "https://app.test/success?session_id={CHECKOUT_SESSION_ID}",
        "cancel_url": "https://app.test/?cancelled=true",
        "line_items[0][price]": "price_123",
        "line_items[0][quantity]": "1",
        "metadata[plan]": "monthly",
        "allow_promotion_codes": "true",
        "customer_email": "owner@example.com",
    }


def test_checkout_session_omits_blank_email(captured):
    calls, _ = captured
    StripeClient("sk_test_abc").create_checkout_session(
        plan="lifetime",
        price_id="price_123",
        checkout_mode="payment",
        success_url="https://app.test/success",
        cancel_url="https://app.test/",
        email="  ",
    )
    assert "customer_email" not in calls[0]["data"]


def test_missing_secret_key_never_calls_stripe(captured):
    calls, _ = captured
    client = StripeClient("")

    ok, data = client.retrieve_checkout_session("cs_test_1")
    assert ok is False
    assert data["error"] == "stripe_secret_key_missing"
    assert calls == []
    assert client.configured is False


def test_error_message_comes_from_stripe(captured):
    _, responses = captured
    responses.append(_Response(400, {"error": {"message": "No such price: 'price_123'"}}))

    ok, data = StripeClient("sk_test_abc").create_checkout_session(
        plan="monthly",
        price_id="price_123",
        checkout_mode="subscription",
        success_url="https://app.test/success",
        cancel_url="https://app.test/",
    )
    assert ok is False
    assert data["error"] == "No such price: 'price_123'"
    assert data["status_code"] == 400


def test_status_fallback_error(captured):
    _, responses = captured
    responses.append(_Response(503, "upstream unavailable"))

    ok, data = StripeClient("sk_test_abc").list_active_products()
    assert ok is False
    assert data["error"] == "stripe_products_status_503"


def test_transport_failure_is_reported(monkeypatch):
    def _boom(url, **kwargs):
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr(stripe_api.httpx, "get", _boom)
    ok, data = StripeClient("sk_test_abc").list_active_prices(product_id="prod_1")
    assert ok is False
    assert data["error"].startswith("stripe_prices_unreachable:")


def test_retrieve_session_expands_customer_and_subscription(captured):
    calls, _ = captured
    StripeClient("sk_test_abc").retrieve_checkout_session(" cs_test_1 ")

    call = calls[0]
    assert call["method"] == "GET"
    assert call["url"].endswith("/checkout/sessions/cs_test_1")
    assert call["params"] == [("expand[]", "customer"), ("expand[]", "subscription")]


def test_create_price_sends_recurring_interval_and_idempotency_key(captured):
    calls, _ = captured
    StripeClient("sk_test_abc").create_price(
        product_id="prod_1",
        unit_amount=900,
        currency="USD",
        interval="month",
        metadata={"plan": "monthly"},
        idempotency_key="pageforge-price-monthly",
    )

    call = calls[0]
    assert call["data"] == {
        "product": "prod_1",
        "unit_amount": "900",
        "currency": "usd",
        "recurring[interval]": "month",
        "metadata[plan]": "monthly",
    }
    assert call["headers"]["Idempotency-Key"] == "pageforge-price-monthly"


def test_list_active_products_unwraps_data(captured):
    _, responses = captured
    responses.append(_Response(200, {"object": "list", "data": [{"id": "prod_1", "name": "PageForge Monthly"}, "junk"]}))

    ok, products = StripeClient("sk_test_abc").list_active_products()
    assert ok is True
    assert products == [{"id": "prod_1", "name": "PageForge Monthly"}]


def test_portal_session_requires_customer(captured):
    calls, _ = captured
    ok, data = StripeClient("sk_test_abc").create_billing_portal_session(customer_id="", return_url="https://app.test/app")
    assert ok is False
    assert data["error"] == "stripe_customer_id_missing"
    assert calls == []
