from tenant_billing.models.plan import Plan
from tenant_billing.models.subscription import (
    GracePeriodExtension,
    Subscription,
    SubscriptionStatus,
)
from tenant_billing.models.subscription_event import EventType, SubscriptionEvent
from tenant_billing.models.tenant import Tenant
from tenant_billing.models.usage import UsageCounter
from tenant_billing.models.webhook_event import FailedWebhookEvent, ProcessedWebhookEvent

__all__ = [
    "EventType",
    "FailedWebhookEvent",
    "GracePeriodExtension",
    "Plan",
    "ProcessedWebhookEvent",
    "Subscription",
    "SubscriptionEvent",
    "SubscriptionStatus",
    "Tenant",
    "UsageCounter",
]
