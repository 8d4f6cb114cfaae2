from flask import current_app

from tenant_billing.config import ConfigurationError
from tenant_billing.providers.base import BillingProviderAdapter
from tenant_billing.providers.paystack_provider import PaystackBillingProvider
from tenant_billing.providers.stripe_provider import StripeBillingProvider

PROVIDERS = {
    StripeBillingProvider.name: StripeBillingProvider,
    PaystackBillingProvider.name: PaystackBillingProvider,
}


def build_provider(config):
    """Instantiate the provider named by ``BILLING_PROVIDER``."""
    name = (config.get("BILLING_PROVIDER") or "stripe").lower()
    try:
        provider_class = PROVIDERS[name]
    except KeyError:
        raise ConfigurationError(f"Unsupported BILLING_PROVIDER '{name}'") from None
    return provider_class.from_config(config)


def get_provider(app=None):
    """The provider chosen at startup for ``app`` (defaults to current_app)."""
    app = app or current_app
    return app.extensions["billing_provider"]


__all__ = [
    "BillingProviderAdapter",
    "PaystackBillingProvider",
    "StripeBillingProvider",
    "build_provider",
    "get_provider",
]
