from __future__ import annotations

import json
import os
from typing import Any

import pytest
from fastapi.testclient import TestClient

from pageforge_billing.license_store import MemoryLicenseStore
from pageforge_billing.prices import PriceCatalog, plan_prices_from_env
from pageforge_billing.server import create_app
from pageforge_billing.service import BillingService
from pageforge_billing.tokens import HmacTokenIssuer


class FakeStripe:
    """In-process stand-in with the StripeClient method surface."""

    def __init__(self, secret_key: str = "sk_test_fake"):
        self.secret_key = secret_key
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.products: list[dict[str, Any]] = []
        self.prices: list[dict[str, Any]] = []
        self.sessions: dict[str, dict[str, Any]] = {}
        self.failures: dict[str, dict[str, Any]] = {}

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    def _record(self, call: str, /, **kwargs) -> dict[str, Any] | None:
        self.calls.append((call, kwargs))
        return self.failures.get(call)

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def create_checkout_session(self, **kwargs):
        failure = self._record("create_checkout_session", **kwargs)
        if failure:
            return False, failure
        session_id = f"cs_test_{len(self.sessions) + 1:03d}"
        session = {
            "id": session_id,
            "url": f"https://checkout.stripe.test/{session_id}",
            "mode": kwargs["checkout_mode"],
            "metadata": {"plan": kwargs["plan"]},
            "payment_status": "unpaid",
            "customer_details": {"email": kwargs.get("email") or None},
            "customer": None,
            "subscription": None,
        }
        self.sessions[session_id] = session
        return True, dict(session)

    def retrieve_checkout_session(self, session_id: str):
        failure = self._record("retrieve_checkout_session", session_id=session_id)
        if failure:
            return False, failure
        session = self.sessions.get(session_id)
        if session is None:
            return False, {"error": f"No such checkout.session: '{session_id}'"}
        return True, json.loads(json.dumps(session))

    def create_billing_portal_session(self, *, customer_id: str, return_url: str):
        failure = self._record("create_billing_portal_session", customer_id=customer_id, return_url=return_url)
        if failure:
            return False, failure
        return True, {"id": "bps_test_001", "url": f"https://billing.stripe.test/{customer_id}"}

    def list_active_products(self, *, limit: int = 100):
        failure = self._record("list_active_products", limit=limit)
        if failure:
            return False, failure
        return True, [dict(product) for product in self.products]

    def create_product(self, *, name: str, metadata=None, idempotency_key: str = ""):
        failure = self._record("create_product", name=name, metadata=metadata, idempotency_key=idempotency_key)
        if failure:
            return False, failure
        product = {"id": f"prod_test_{len(self.products) + 1:03d}", "name": name, "active": True}
        self.products.append(product)
        return True, dict(product)

    def list_active_prices(self, *, product_id: str, limit: int = 100):
        failure = self._record("list_active_prices", product_id=product_id, limit=limit)
        if failure:
            return False, failure
        return True, [dict(price) for price in self.prices if price["product"] == product_id]

    def create_price(self, *, product_id: str, unit_amount: int, currency: str, interval=None, metadata=None, idempotency_key: str = ""):
        failure = self._record(
            "create_price",
            product_id=product_id,
            unit_amount=unit_amount,
            currency=currency,
            interval=interval,
            idempotency_key=idempotency_key,
        )
        if failure:
            return False, failure
        price = {
            "id": f"price_test_{len(self.prices) + 1:03d}",
            "product": product_id,
            "unit_amount": unit_amount,
            "currency": currency,
            "recurring": {"interval": interval} if interval else None,
        }
        self.prices.append(price)
        return True, dict(price)

    def complete_session(
        self,
        session_id: str,
        *,
        email: str,
        customer_id: str = "cus_test_001",
        payment_status: str = "paid",
        subscription: dict[str, Any] | None = None,
    ):
        session = self.sessions[session_id]
        session["payment_status"] = payment_status
        session["customer_details"] = {"email": email}
        session["customer"] = {"id": customer_id, "email": email}
        session["subscription"] = subscription


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    for name in list(os.environ):
        if name.startswith("PAGEFORGE_") or name == "PORT":
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("PAGEFORGE_HOME", str(tmp_path / "pageforge-home"))


@pytest.fixture
def fake_stripe() -> FakeStripe:
    return FakeStripe()


@pytest.fixture
def store() -> MemoryLicenseStore:
    return MemoryLicenseStore()


@pytest.fixture
def tokens() -> HmacTokenIssuer:
    return HmacTokenIssuer("test-token-secret")


@pytest.fixture
def service(store, fake_stripe, tokens) -> BillingService:
    return BillingService(
        store=store,
        stripe=fake_stripe,
        prices=PriceCatalog(fake_stripe, plan_prices_from_env()),
        tokens=tokens,
        app_url="https://pageforge.test",
    )


@pytest.fixture
def client(service) -> TestClient:
    return TestClient(create_app(service))
