"""Composition of the billing components behind one injectable object."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .checkout import start_checkout
from .config import app_url, clean_text, env_flag, env_int, env_text, stripe_mode
from .errors import ClientError, ConfigurationError, NotFound, ProviderError
from .license_store import LicenseStore, normalize_email, open_license_store
from .prices import PriceCatalog
from .stripe_api import StripeClient
from .tokens import TokenIssuer, token_issuer_from_env
from .verification import check_access, verify_session
from .webhooks import STRIPE_WEBHOOK_TOLERANCE_SECONDS_DEFAULT, WebhookReconciler, parse_webhook_event


logger = logging.getLogger(__name__)


@dataclass
class BillingService:
    store: LicenseStore
    stripe: StripeClient
    prices: PriceCatalog
    tokens: TokenIssuer
    app_url: str = ""
    webhook_secret: str = ""
    webhook_tolerance_seconds: int = STRIPE_WEBHOOK_TOLERANCE_SECONDS_DEFAULT
    max_failed_payments: int = 0
    protect_lifetime_on_update: bool = False

    @classmethod
    def from_env(cls) -> "BillingService":
        stripe = StripeClient.from_env()
        return cls(
            store=open_license_store(),
            stripe=stripe,
            prices=PriceCatalog.from_env(stripe),
            tokens=token_issuer_from_env(),
            app_url=app_url(),
            webhook_secret=env_text("PAGEFORGE_STRIPE_WEBHOOK_SECRET"),
            webhook_tolerance_seconds=env_int(
                "PAGEFORGE_STRIPE_WEBHOOK_TOLERANCE_SECONDS",
                STRIPE_WEBHOOK_TOLERANCE_SECONDS_DEFAULT,
                minimum=10,
            ),
            max_failed_payments=env_int("PAGEFORGE_MAX_FAILED_PAYMENTS", 0, minimum=0),
            protect_lifetime_on_update=env_flag("PAGEFORGE_PROTECT_LIFETIME_ON_UPDATE"),
        )

    @property
    def stripe_mode(self) -> str:
        return stripe_mode(self.stripe.secret_key)

    def should_warm_prices(self) -> bool:
        return env_flag("PAGEFORGE_WARM_PRICES", default=self.stripe.configured)

    def _app_url(self, base_url: str = "") -> str:
        return clean_text(self.app_url).rstrip("/") or clean_text(base_url).rstrip("/")

    def checkout(self, plan: Any, email: Any = None, *, base_url: str = "") -> dict[str, str]:
        return start_checkout(
            plan,
            email,
            stripe=self.stripe,
            prices=self.prices,
            app_url=self._app_url(base_url),
        )

    def verify(self, session_id: Any) -> dict[str, Any]:
        return verify_session(session_id, stripe=self.stripe, store=self.store, tokens=self.tokens)

    def check_access(self, email: Any = None, access_token: Any = None) -> dict[str, Any]:
        return check_access(email, access_token, store=self.store, tokens=self.tokens)

    def portal(self, email: Any, *, base_url: str = "") -> dict[str, str]:
        clean_email = normalize_email(email)
        if not clean_email:
            raise ClientError("Missing email")
        record = self.store.get(clean_email)
        if record is None or not record.customer_id:
            raise NotFound("No subscription found for this email.")

        base = self._app_url(base_url)
        if not base:
            raise ConfigurationError("app_url_missing")
        if not self.stripe.configured:
            raise ConfigurationError("stripe_secret_key_missing")
        ok, session = self.stripe.create_billing_portal_session(
            customer_id=record.customer_id,
            return_url=f"{base}/app",
        )
        if not ok:
            raise ProviderError.from_result(session, "stripe_portal_session_failed")
        return {"url": clean_text(session.get("url"))}

    def handle_webhook(self, payload: bytes, signature_header: str) -> dict[str, Any]:
        event = parse_webhook_event(
            payload,
            signature_header,
            secret=self.webhook_secret,
            tolerance_seconds=self.webhook_tolerance_seconds,
        )
        reconciler = WebhookReconciler(
            self.store,
            max_failed_payments=self.max_failed_payments,
            protect_lifetime_on_update=self.protect_lifetime_on_update,
        )
        return {"received": True, **reconciler.apply(event)}

    def warm_prices(self) -> tuple[dict[str, str], dict[str, str]]:
        resolved, errors = self.prices.warm()
        for plan, error in errors.items():
            logger.warning("Price warm-up failed for %s: %s", plan, error)
        return resolved, errors
