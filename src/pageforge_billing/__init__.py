"""PageForge billing backend: Stripe checkout, license store and webhook reconciliation."""
