"""Payment verification after checkout redirect, and access checks."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from .config import clean_text
from .errors import ClientError, ConfigurationError, PaymentIncomplete, ProviderError
from .license_store import PLAN_MONTHLY, PLANS, LicenseStore, normalize_email
from .stripe_api import StripeClient
from .tokens import TokenIssuer


logger = logging.getLogger(__name__)

ENTITLED_SUBSCRIPTION_STATUSES = {"active", "trialing"}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def object_id(value: Any) -> str:
    """Stripe references arrive as a bare id or as an expanded object."""
    if isinstance(value, dict):
        return clean_text(value.get("id"))
    return clean_text(value)


def session_is_paid(session: dict[str, Any]) -> bool:
    if clean_text(session.get("payment_status")).lower() == "paid":
        return True
    subscription = session.get("subscription")
    if isinstance(subscription, dict):
        return clean_text(subscription.get("status")).lower() in ENTITLED_SUBSCRIPTION_STATUSES
    return False


def session_email(session: dict[str, Any]) -> str:
    details = session.get("customer_details")
    if isinstance(details, dict):
        email = normalize_email(details.get("email"))
        if email:
            return email
    customer = session.get("customer")
    if isinstance(customer, dict):
        return normalize_email(customer.get("email"))
    return ""


def session_plan(session: dict[str, Any]) -> str:
    metadata = session.get("metadata")
    plan = clean_text(metadata.get("plan")) if isinstance(metadata, dict) else ""
    return plan if plan in PLANS else PLAN_MONTHLY


def verify_session(
    session_id: Any,
    *,
    stripe: StripeClient,
    store: LicenseStore,
    tokens: TokenIssuer,
) -> dict[str, Any]:
    clean_id = clean_text(session_id)
    if not clean_id:
        raise ClientError("Missing sessionId")
    if not stripe.configured:
        raise ConfigurationError("stripe_secret_key_missing")

    ok, session = stripe.retrieve_checkout_session(clean_id)
    if not ok:
        logger.error("Verify error for session %s: %s", clean_id, session.get("error"))
        raise ProviderError.from_result(session, "stripe_session_lookup_failed")

    if not session_is_paid(session):
        raise PaymentIncomplete("Payment not completed.")

    email = session_email(session)
    if not email:
        logger.error("Session %s is paid but carries no customer email", clean_id)
        raise ProviderError("stripe_session_missing_email")
    plan = session_plan(session)
    access_token = tokens.issue(email, plan=plan)

    fields: dict[str, Any] = {
        "plan": plan,
        "active": True,
        "subscription_id": object_id(session.get("subscription")) or None,
        "activated_at": _now_iso(),
    }
    # Guest checkouts carry no customer; keep the one already on file.
    customer_id = object_id(session.get("customer"))
    if customer_id:
        fields["customer_id"] = customer_id
    store.upsert(email, fields)
    logger.info("Access granted: %s (%s)", email, plan)
    return {
        "success": True,
        "email": email,
        "plan": plan,
        "accessToken": access_token,
    }


def check_access(
    email: Any = None,
    access_token: Any = None,
    *,
    store: LicenseStore,
    tokens: TokenIssuer,
) -> dict[str, Any]:
    resolved = normalize_email(email)
    token = clean_text(access_token)
    if not resolved and token:
        status = tokens.verify(token)
        if not status.get("valid"):
            raise ClientError(f"Invalid accessToken: {status.get('error', 'invalid_token')}")
        resolved = normalize_email(status.get("email"))

    if not resolved:
        raise ClientError("Provide email or accessToken")

    record = store.get(resolved)
    if record is not None and record.active:
        return {"access": True, "plan": record.plan, "email": resolved}
    return {"access": False}
