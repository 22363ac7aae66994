"""Stripe REST helpers for PageForge billing.

Calls are form-encoded `httpx` requests with a per-call timeout. Helpers never
raise: each returns an `(ok, data)` tuple, where a failed call carries an
`error` string (Stripe's own message when the API supplied one) and the raw
response under `detail`. Nothing here retries.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .config import env_int, stripe_secret_key


logger = logging.getLogger(__name__)

STRIPE_API_BASE = "https://api.stripe.com/v1"
STRIPE_TIMEOUT_SECONDS_DEFAULT = 20

Params = list[tuple[str, str]]


def _clean_text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _stripe_error_message(data: Any) -> str:
    if not isinstance(data, dict):
        return ""
    error = data.get("error")
    if isinstance(error, dict):
        return _clean_text(error.get("message"))
    return ""


class StripeClient:
    def __init__(self, secret_key: str, *, timeout_seconds: int = STRIPE_TIMEOUT_SECONDS_DEFAULT):
        self.secret_key = _clean_text(secret_key)
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_env(cls) -> "StripeClient":
        return cls(
            stripe_secret_key(),
            timeout_seconds=env_int("PAGEFORGE_STRIPE_TIMEOUT_SECONDS", STRIPE_TIMEOUT_SECONDS_DEFAULT, minimum=1),
        )

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    def _send(
        self,
        method: str,
        path: str,
        *,
        data: dict[str, str] | None = None,
        params: Params | None = None,
        idempotency_key: str = "",
        error_prefix: str = "stripe",
    ) -> tuple[bool, dict[str, Any]]:
        if not self.secret_key:
            return False, {"error": "stripe_secret_key_missing"}

        url = f"{STRIPE_API_BASE}{path}"
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        try:
            if method == "GET":
                response = httpx.get(url, params=params, headers=headers, timeout=self.timeout_seconds)
            else:
                response = httpx.post(url, data=data, headers=headers, timeout=self.timeout_seconds)
        except Exception as exc:
            logger.error("Stripe %s %s unreachable: %s", method, path, exc)
            return False, {"error": f"{error_prefix}_unreachable: {exc}"}

        try:
            payload = response.json()
        except Exception:
            payload = {"error": response.text}

        if response.status_code >= 300:
            message = _stripe_error_message(payload) or f"{error_prefix}_status_{response.status_code}"
            logger.error("Stripe %s %s failed (%s): %s", method, path, response.status_code, message)
            return False, {"error": message, "status_code": response.status_code, "detail": payload}
        if not isinstance(payload, dict):
            return False, {"error": f"{error_prefix}_invalid_response"}
        return True, payload

    def create_checkout_session(
        self,
        *,
        plan: str,
        price_id: str,
        checkout_mode: str,
        success_url: str,
        cancel_url: str,
        email: str = "",
    ) -> tuple[bool, dict[str, Any]]:
        if not _clean_text(price_id):
            return False, {"error": f"stripe_price_id_missing_for_plan:{_clean_text(plan)}"}

        payload = {
            "mode": _clean_text(checkout_mode) or "payment",
            "success_url": _clean_text(success_url),
            "cancel_url": _clean_text(cancel_url),
            "line_items[0][price]": _clean_text(price_id),
            "line_items[0][quantity]": "1",
            "metadata[plan]": _clean_text(plan),
            "allow_promotion_codes": "true",
        }
        if _clean_text(email):
            payload["customer_email"] = _clean_text(email)

        ok, data = self._send("POST", "/checkout/sessions", data=payload)
        if not ok:
            return ok, data
        if not _clean_text(data.get("url")) or not _clean_text(data.get("id")):
            return False, {"error": "stripe_missing_checkout_url", "detail": data}
        return True, data

    def retrieve_checkout_session(self, session_id: str) -> tuple[bool, dict[str, Any]]:
        clean_id = _clean_text(session_id)
        if not clean_id:
            return False, {"error": "stripe_session_id_missing"}
        params = [("expand[]", "customer"), ("expand[]", "subscription")]
        return self._send("GET", f"/checkout/sessions/{clean_id}", params=params)

    def create_billing_portal_session(self, *, customer_id: str, return_url: str) -> tuple[bool, dict[str, Any]]:
        customer = _clean_text(customer_id)
        if not customer:
            return False, {"error": "stripe_customer_id_missing"}
        payload = {
            "customer": customer,
            "return_url": _clean_text(return_url),
        }
        ok, data = self._send("POST", "/billing_portal/sessions", data=payload, error_prefix="stripe_portal")
        if not ok:
            return ok, data
        if not _clean_text(data.get("url")):
            return False, {"error": "stripe_portal_missing_url", "detail": data}
        return True, data

    def list_active_products(self, *, limit: int = 100) -> tuple[bool, list[dict[str, Any]] | dict[str, Any]]:
        ok, data = self._send(
            "GET",
            "/products",
            params=[("active", "true"), ("limit", str(limit))],
            error_prefix="stripe_products",
        )
        if not ok:
            return ok, data
        records = data.get("data")
        if not isinstance(records, list):
            return False, {"error": "stripe_products_invalid_response", "detail": data}
        return True, [item for item in records if isinstance(item, dict)]

    def create_product(
        self,
        *,
        name: str,
        metadata: dict[str, str] | None = None,
        idempotency_key: str = "",
    ) -> tuple[bool, dict[str, Any]]:
        payload = {"name": _clean_text(name)}
        for key, value in (metadata or {}).items():
            payload[f"metadata[{key}]"] = str(value)
        ok, data = self._send(
            "POST",
            "/products",
            data=payload,
            idempotency_key=idempotency_key,
            error_prefix="stripe_product_create",
        )
        if ok and not _clean_text(data.get("id")):
            return False, {"error": "stripe_product_missing_id", "detail": data}
        return ok, data

    def list_active_prices(
        self,
        *,
        product_id: str,
        limit: int = 100,
    ) -> tuple[bool, list[dict[str, Any]] | dict[str, Any]]:
        ok, data = self._send(
            "GET",
            "/prices",
            params=[("product", _clean_text(product_id)), ("active", "true"), ("limit", str(limit))],
            error_prefix="stripe_prices",
        )
        if not ok:
            return ok, data
        records = data.get("data")
        if not isinstance(records, list):
            return False, {"error": "stripe_prices_invalid_response", "detail": data}
        return True, [item for item in records if isinstance(item, dict)]

    def create_price(
        self,
        *,
        product_id: str,
        unit_amount: int,
        currency: str,
        interval: str | None = None,
        metadata: dict[str, str] | None = None,
        idempotency_key: str = "",
    ) -> tuple[bool, dict[str, Any]]:
        payload = {
            "product": _clean_text(product_id),
            "unit_amount": str(int(unit_amount)),
            "currency": _clean_text(currency).lower(),
        }
        if interval:
            payload["recurring[interval]"] = interval
        for key, value in (metadata or {}).items():
            payload[f"metadata[{key}]"] = str(value)
        ok, data = self._send(
            "POST",
            "/prices",
            data=payload,
            idempotency_key=idempotency_key,
            error_prefix="stripe_price_create",
        )
        if ok and not _clean_text(data.get("id")):
            return False, {"error": "stripe_price_missing_id", "detail": data}
        return ok, data
