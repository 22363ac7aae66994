"""Checkout initiation: plan validation, price resolution, Stripe session creation."""

from __future__ import annotations

import logging
from typing import Any

from .config import clean_text
from .errors import ClientError, ConfigurationError, ProviderError
from .license_store import PLANS
from .prices import PriceCatalog
from .stripe_api import StripeClient


logger = logging.getLogger(__name__)


def checkout_redirect_urls(app_url: str) -> tuple[str, str]:
    base = clean_text(app_url).rstrip("/")
    # Stripe substitutes {CHECKOUT_SESSION_ID} itself.
    return f"{base}/success?session_id={{CHECKOUT_SESSION_ID}}", f"{base}/?cancelled=true"


def start_checkout(
    plan: Any,
    email: Any = None,
    *,
    stripe: StripeClient,
    prices: PriceCatalog,
    app_url: str,
) -> dict[str, str]:
    clean_plan = clean_text(plan)
    if clean_plan not in PLANS:
        raise ClientError('Invalid plan. Use "monthly" or "lifetime".')
    if not stripe.configured:
        raise ConfigurationError("stripe_secret_key_missing")
    if not clean_text(app_url):
        raise ConfigurationError("app_url_missing")

    price_id = prices.price_id(clean_plan)
    success_url, cancel_url = checkout_redirect_urls(app_url)
    ok, session = stripe.create_checkout_session(
        plan=clean_plan,
        price_id=price_id,
        checkout_mode=prices.plan(clean_plan).checkout_mode,
        success_url=success_url,
        cancel_url=cancel_url,
        email=clean_text(email),
    )
    if not ok:
        logger.error("Stripe checkout error for plan %s: %s", clean_plan, session.get("error"))
        raise ProviderError.from_result(session, "stripe_checkout_failed")
    return {"url": clean_text(session.get("url")), "sessionId": clean_text(session.get("id"))}
