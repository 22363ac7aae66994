"""Plan price definitions and the process-wide price catalog."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any

from .config import clean_text, env_int, env_text
from .errors import ClientError, ProviderError
from .license_store import PLAN_LIFETIME, PLAN_MONTHLY, PLANS
from .stripe_api import StripeClient


logger = logging.getLogger(__name__)

DEFAULT_PRODUCT_NAME = "PageForge"
DEFAULT_CURRENCY = "usd"
DEFAULT_MONTHLY_CENTS = 900
DEFAULT_LIFETIME_CENTS = 4900


@dataclass(frozen=True)
class PlanPrice:
    plan: str
    product_name: str
    unit_amount: int
    currency: str
    interval: str | None

    @property
    def checkout_mode(self) -> str:
        return "subscription" if self.interval else "payment"

    def idempotency_key(self, kind: str, scope: str) -> str:
        """Key for a Stripe create; `scope` is the product name or the owning product id."""
        interval = self.interval or "once"
        scope_slug = "_".join(clean_text(scope).split())
        return f"pageforge-{kind}-{scope_slug}-{self.plan}-{self.unit_amount}-{self.currency}-{interval}"

    def matches_price(self, price: dict[str, Any]) -> bool:
        if price.get("unit_amount") != self.unit_amount:
            return False
        if clean_text(price.get("currency")).lower() != self.currency:
            return False
        recurring = price.get("recurring")
        if self.interval is None:
            return not recurring
        return isinstance(recurring, dict) and clean_text(recurring.get("interval")) == self.interval


def plan_prices_from_env() -> dict[str, PlanPrice]:
    stem = env_text("PAGEFORGE_PRODUCT_NAME", DEFAULT_PRODUCT_NAME)
    currency = env_text("PAGEFORGE_CURRENCY", DEFAULT_CURRENCY).lower()
    return {
        PLAN_MONTHLY: PlanPrice(
            plan=PLAN_MONTHLY,
            product_name=f"{stem} Monthly",
            unit_amount=env_int("PAGEFORGE_PRICE_MONTHLY_CENTS", DEFAULT_MONTHLY_CENTS, minimum=0),
            currency=currency,
            interval="month",
        ),
        PLAN_LIFETIME: PlanPrice(
            plan=PLAN_LIFETIME,
            product_name=f"{stem} Lifetime",
            unit_amount=env_int("PAGEFORGE_PRICE_LIFETIME_CENTS", DEFAULT_LIFETIME_CENTS, minimum=0),
            currency=currency,
            interval=None,
        ),
    }


def configured_price_ids_from_env() -> dict[str, str]:
    configured: dict[str, str] = {}
    for plan in PLANS:
        value = env_text(f"PAGEFORGE_STRIPE_PRICE_{plan.upper()}")
        if value:
            configured[plan] = value
    return configured


class PriceCatalog:
    """Resolves plan names to Stripe price ids, once per process.

    Configured ids win. Otherwise the catalog finds a matching active product
    and price on Stripe, creating them when absent. Resolution of a plan runs
    under that plan's lock, so concurrent cold starts issue one find-or-create.
    """

    def __init__(
        self,
        stripe: StripeClient,
        plans: dict[str, PlanPrice] | None = None,
        configured: dict[str, str] | None = None,
    ):
        self.stripe = stripe
        self.plans = dict(plans if plans is not None else plan_prices_from_env())
        self.configured = {key: value for key, value in (configured or {}).items() if clean_text(value)}
        self._cache: dict[str, str] = {}
        self._locks = {plan: threading.Lock() for plan in self.plans}

    @classmethod
    def from_env(cls, stripe: StripeClient) -> "PriceCatalog":
        return cls(stripe, plan_prices_from_env(), configured_price_ids_from_env())

    def plan(self, plan: str) -> PlanPrice:
        definition = self.plans.get(plan)
        if definition is None:
            raise ClientError(f'Invalid plan "{plan}".')
        return definition

    def cached(self) -> dict[str, str]:
        return dict(self._cache)

    def price_id(self, plan: str) -> str:
        definition = self.plan(plan)
        cached = self._cache.get(plan)
        if cached:
            return cached
        with self._locks[plan]:
            cached = self._cache.get(plan)
            if cached:
                return cached
            price_id = self.configured.get(plan) or self._find_or_create(definition)
            self._cache[plan] = price_id
            return price_id

    def warm(self) -> tuple[dict[str, str], dict[str, str]]:
        resolved: dict[str, str] = {}
        errors: dict[str, str] = {}
        for plan in self.plans:
            try:
                resolved[plan] = self.price_id(plan)
            except ProviderError as exc:
                errors[plan] = exc.message
        return resolved, errors

    def _find_or_create(self, definition: PlanPrice) -> str:
        product_id = self._find_or_create_product(definition)

        ok, prices = self.stripe.list_active_prices(product_id=product_id)
        if not ok:
            raise ProviderError.from_result(prices, "stripe_prices_failed")
        for price in prices:
            if definition.matches_price(price) and clean_text(price.get("id")):
                return clean_text(price.get("id"))

        ok, created = self.stripe.create_price(
            product_id=product_id,
            unit_amount=definition.unit_amount,
            currency=definition.currency,
            interval=definition.interval,
            metadata={"plan": definition.plan},
            idempotency_key=definition.idempotency_key("price", product_id),
        )
        if not ok:
            raise ProviderError.from_result(created, "stripe_price_create_failed")
        price_id = clean_text(created.get("id"))
        logger.info("Created Stripe price %s for plan %s", price_id, definition.plan)
        return price_id

    def _find_or_create_product(self, definition: PlanPrice) -> str:
        ok, products = self.stripe.list_active_products()
        if not ok:
            raise ProviderError.from_result(products, "stripe_products_failed")
        for product in products:
            if clean_text(product.get("name")) == definition.product_name and clean_text(product.get("id")):
                return clean_text(product.get("id"))

        ok, created = self.stripe.create_product(
            name=definition.product_name,
            metadata={"plan": definition.plan},
            idempotency_key=definition.idempotency_key("product", definition.product_name),
        )
        if not ok:
            raise ProviderError.from_result(created, "stripe_product_create_failed")
        product_id = clean_text(created.get("id"))
        logger.info("Created Stripe product %s (%s)", product_id, definition.product_name)
        return product_id
