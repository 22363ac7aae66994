"""Stripe webhook authentication and license reconciliation.

Invoice and subscription events resolve their license through the customer
id reverse lookup and only flip the record's `active` flag. Subscription deletion
never deactivates a lifetime record; subscription updates apply to every plan
unless lifetime protection is switched on. A paid one-time checkout grants
lifetime access by email. Events without a matching license and unrecognized
event types are accepted and ignored.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable

from .config import clean_text
from .errors import ClientError
from .license_store import PLAN_LIFETIME, PLAN_MONTHLY, LicenseRecord, LicenseStore, normalize_email
from .verification import ENTITLED_SUBSCRIPTION_STATUSES, object_id


logger = logging.getLogger(__name__)

STRIPE_WEBHOOK_TOLERANCE_SECONDS_DEFAULT = 300

ACTION_ACTIVATED = "activated"
ACTION_DEACTIVATED = "deactivated"
ACTION_UNCHANGED = "unchanged"
ACTION_LOGGED = "logged"
ACTION_IGNORED_NO_LICENSE = "ignored:no_license"
ACTION_IGNORED_EVENT = "ignored:event_not_handled"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def verify_stripe_signature(
    payload: bytes,
    signature_header: str,
    *,
    secret: str,
    tolerance_seconds: int = STRIPE_WEBHOOK_TOLERANCE_SECONDS_DEFAULT,
    now: int | None = None,
) -> tuple[bool, dict[str, Any] | str]:
    header = clean_text(signature_header)
    if not header:
        return False, "stripe_signature_missing"

    timestamp_raw = ""
    signatures: list[str] = []
    for part in header.split(","):
        key, sep, value = part.partition("=")
        if not sep:
            continue
        clean_key = clean_text(key)
        clean_value = clean_text(value)
        if clean_key == "t":
            timestamp_raw = clean_value
        elif clean_key == "v1" and clean_value:
            signatures.append(clean_value)

    if not timestamp_raw or not signatures:
        return False, "stripe_signature_invalid_format"

    try:
        timestamp = int(timestamp_raw)
    except ValueError:
        return False, "stripe_signature_invalid_timestamp"

    current = int(time.time()) if now is None else int(now)
    if abs(current - timestamp) > tolerance_seconds:
        return False, "stripe_signature_timestamp_out_of_tolerance"

    signed_payload = f"{timestamp}.".encode("utf-8") + payload
    expected = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        return False, "stripe_signature_mismatch"

    return _parse_event(payload)


def _parse_event(payload: bytes) -> tuple[bool, dict[str, Any] | str]:
    try:
        event = json.loads(payload.decode("utf-8"))
    except ValueError:
        return False, "stripe_payload_invalid_json"
    if not isinstance(event, dict):
        return False, "stripe_payload_invalid_type"
    if not clean_text(event.get("type")):
        return False, "stripe_event_missing_type"
    return True, event


def parse_webhook_event(
    payload: bytes,
    signature_header: str,
    *,
    secret: str = "",
    tolerance_seconds: int = STRIPE_WEBHOOK_TOLERANCE_SECONDS_DEFAULT,
) -> dict[str, Any]:
    """Authenticate (when a secret is configured) and decode a webhook body."""
    if clean_text(secret):
        ok, parsed = verify_stripe_signature(
            payload,
            signature_header,
            secret=clean_text(secret),
            tolerance_seconds=tolerance_seconds,
        )
    else:
        logger.warning("PAGEFORGE_STRIPE_WEBHOOK_SECRET not set; skipping webhook signature check")
        ok, parsed = _parse_event(payload)

    if not ok or not isinstance(parsed, dict):
        logger.error("Webhook rejected: %s", parsed)
        raise ClientError(f"Webhook Error: {parsed}")
    return parsed


def _event_object(event: dict[str, Any]) -> dict[str, Any]:
    data = event.get("data")
    payload = data.get("object") if isinstance(data, dict) else None
    return payload if isinstance(payload, dict) else {}


def _license_for_customer(store: LicenseStore, payload: dict[str, Any]) -> LicenseRecord | None:
    return store.get_by_customer_id(object_id(payload.get("customer")))


class WebhookReconciler:
    def __init__(
        self,
        store: LicenseStore,
        *,
        max_failed_payments: int = 0,
        protect_lifetime_on_update: bool = False,
    ):
        self.store = store
        self.max_failed_payments = max(0, int(max_failed_payments))
        self.protect_lifetime_on_update = bool(protect_lifetime_on_update)
        self._handlers: dict[str, Callable[[dict[str, Any]], str]] = {
            "invoice.payment_succeeded": self._invoice_payment_succeeded,
            "invoice.payment_failed": self._invoice_payment_failed,
            "customer.subscription.deleted": self._subscription_deleted,
            "customer.subscription.updated": self._subscription_updated,
            "checkout.session.completed": self._checkout_session_completed,
        }

    def apply(self, event: dict[str, Any]) -> dict[str, Any]:
        event_type = clean_text(event.get("type"))
        logger.info("Webhook: %s", event_type)
        handler = self._handlers.get(event_type)
        if handler is None:
            return {"event_type": event_type, "action": ACTION_IGNORED_EVENT}
        return {"event_type": event_type, "action": handler(_event_object(event))}

    def _invoice_payment_succeeded(self, invoice: dict[str, Any]) -> str:
        record = _license_for_customer(self.store, invoice)
        if record is None:
            return ACTION_IGNORED_NO_LICENSE
        self.store.upsert(record.email, {"active": True, "failed_payments": 0})
        logger.info("Renewal OK: %s", record.email)
        return ACTION_ACTIVATED

    def _invoice_payment_failed(self, invoice: dict[str, Any]) -> str:
        record = _license_for_customer(self.store, invoice)
        if record is None:
            return ACTION_IGNORED_NO_LICENSE
        if self.max_failed_payments <= 0:
            logger.warning("Payment failed for: %s", record.email)
            return ACTION_LOGGED

        failures = record.failed_payments + 1
        fields: dict[str, Any] = {"failed_payments": failures}
        deactivate = record.plan == PLAN_MONTHLY and record.active and failures >= self.max_failed_payments
        if deactivate:
            fields["active"] = False
        self.store.upsert(record.email, fields)
        logger.warning("Payment failed for: %s (%s/%s)", record.email, failures, self.max_failed_payments)
        return ACTION_DEACTIVATED if deactivate else ACTION_LOGGED

    def _subscription_deleted(self, subscription: dict[str, Any]) -> str:
        record = _license_for_customer(self.store, subscription)
        if record is None:
            return ACTION_IGNORED_NO_LICENSE
        if record.plan != PLAN_MONTHLY:
            return ACTION_UNCHANGED
        self.store.upsert(record.email, {"active": False})
        logger.info("Subscription cancelled: %s", record.email)
        return ACTION_DEACTIVATED

    def _subscription_updated(self, subscription: dict[str, Any]) -> str:
        record = _license_for_customer(self.store, subscription)
        if record is None:
            return ACTION_IGNORED_NO_LICENSE
        status = clean_text(subscription.get("status")).lower()
        active = status in ENTITLED_SUBSCRIPTION_STATUSES
        if not active and record.plan == PLAN_LIFETIME and self.protect_lifetime_on_update:
            return ACTION_UNCHANGED
        self.store.upsert(record.email, {"active": active})
        logger.info("Subscription updated: %s -> %s", record.email, status or "unknown")
        return ACTION_ACTIVATED if active else ACTION_DEACTIVATED

    def _checkout_session_completed(self, session: dict[str, Any]) -> str:
        mode = clean_text(session.get("mode")).lower()
        payment_status = clean_text(session.get("payment_status")).lower()
        if mode != "payment" or payment_status != "paid":
            return ACTION_UNCHANGED
        details = session.get("customer_details")
        email = normalize_email(details.get("email")) if isinstance(details, dict) else ""
        if not email:
            return "ignored:no_email"
        fields: dict[str, Any] = {
            "plan": PLAN_LIFETIME,
            "active": True,
            "subscription_id": None,
            "activated_at": _now_iso(),
            "failed_payments": 0,
        }
        customer_id = object_id(session.get("customer"))
        if customer_id:
            fields["customer_id"] = customer_id
        self.store.upsert(email, fields)
        logger.info("Lifetime access granted: %s", email)
        return ACTION_ACTIVATED
