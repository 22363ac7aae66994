"""Error taxonomy shared by the billing components and the HTTP layer."""

from __future__ import annotations


class BillingError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ClientError(BillingError):
    status_code = 400


class PaymentIncomplete(BillingError):
    status_code = 402


class NotFound(BillingError):
    status_code = 404


class ConfigurationError(BillingError):
    status_code = 500


class LicenseStoreError(BillingError):
    status_code = 500


class ProviderError(BillingError):
    """A Stripe call failed; `message` carries Stripe's own text when available."""

    status_code = 502

    def __init__(self, message: str, detail: object = None):
        super().__init__(message)
        self.detail = detail

    @classmethod
    def from_result(cls, result: dict, fallback: str) -> "ProviderError":
        message = result.get("error") if isinstance(result, dict) else None
        if not isinstance(message, str) or not message.strip():
            message = fallback
        return cls(message.strip(), detail=result.get("detail") if isinstance(result, dict) else None)
