from abc import ABC, abstractmethod

from tenant_billing.errors import ValidationError
from tenant_billing.extensions import db


class BillingProviderAdapter(ABC):
    """
    Uniform interface to an external payment provider.

    Implementations wrap every provider failure in ProviderError so nothing
    outside ``tenant_billing.providers`` depends on a provider SDK's types.
    """

    name = None
    signature_header = None

    @abstractmethod
    def create_customer(self, tenant, extra=None):
        """Create a provider customer and return it as a dict with ``id``."""

    @abstractmethod
    def create_subscription(self, tenant, plan, payment_method_token):
        """Subscribe the tenant, creating a customer first when needed."""

    @abstractmethod
    def cancel_subscription(self, subscription, immediate=False):
        pass

    @abstractmethod
    def resume_subscription(self, subscription):
        pass

    @abstractmethod
    def update_subscription(self, subscription, new_plan, options=None):
        pass

    @abstractmethod
    def create_checkout_session(self, tenant, plan, options=None):
        pass

    @abstractmethod
    def create_portal_session(self, customer_id, options=None):
        pass

    @abstractmethod
    def get_customer(self, customer_id):
        pass

    @abstractmethod
    def get_subscription(self, subscription_id):
        pass

    @abstractmethod
    def verify_webhook_signature(self, payload, signature):
        """Return True only for an authentic payload. Never raises."""

    def normalize_event(self, payload):
        """
        Map a decoded webhook body to ``{"id", "type", "data": {"object"}}``.

        The default expects the payload to already use that shape.
        """
        if not isinstance(payload, dict):
            raise ValidationError("Webhook payload must be a JSON object")
        event_id = payload.get("id")
        event_type = payload.get("type")
        if not event_id or not event_type:
            raise ValidationError("Webhook payload requires 'id' and 'type'")
        data = payload.get("data") or {}
        return {
            "id": str(event_id),
            "type": event_type,
            "data": {"object": data.get("object") or {}},
        }

    def ensure_customer(self, tenant):
        """Return the tenant's provider customer id, creating one if missing."""
        if tenant.external_customer_id:
            return tenant.external_customer_id
        customer = self.create_customer(tenant)
        tenant.external_customer_id = customer["id"]
        db.session.commit()
        return tenant.external_customer_id
