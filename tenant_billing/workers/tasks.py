import logging

from flask import current_app
from sqlalchemy.exc import OperationalError

from tenant_billing.billing.grace_period import GracePeriodService
from tenant_billing.errors import SubscriptionNotFound, ValidationError
from tenant_billing.extensions import db
from tenant_billing.models import FailedWebhookEvent
from tenant_billing.webhooks.processor import WebhookProcessor
from tenant_billing.workers.celery_app import BillingTask, celery

logger = logging.getLogger(__name__)

RETRY_COUNTDOWNS = [10, 30, 60]

# Failures that can resolve themselves on a later attempt.
RETRYABLE_ERRORS = (SubscriptionNotFound, OperationalError)


def _record_failure(provider_name, event, exc):
    db.session.rollback()
    db.session.add(
        FailedWebhookEvent(
            provider=provider_name,
            external_event_id=event.get("id"),
            event_type=event.get("type"),
            payload=event,
            error_message=str(exc),
        )
    )
    db.session.commit()


@celery.task(
    bind=True,
    base=BillingTask,
    name="tenant_billing.process_webhook_event",
    max_retries=len(RETRY_COUNTDOWNS),
)
def process_webhook_event(self, provider_name, event):
    """Apply one normalized webhook event. Safe to redeliver."""
    log_context = {
        "provider": provider_name,
        "event_id": event.get("id"),
        "event_type": event.get("type"),
        "attempt": self.request.retries,
    }
    processor = WebhookProcessor.from_config(current_app.config)

    try:
        return processor.process(provider_name, event)
    except ValidationError as exc:
        logger.error("Webhook event is malformed", extra={**log_context, "error": str(exc)})
        _record_failure(provider_name, event, exc)
        return "failed"
    except RETRYABLE_ERRORS as exc:
        if self.request.retries >= self.max_retries:
            logger.error("Webhook event exhausted retries", extra={**log_context, "error": str(exc)})
            _record_failure(provider_name, event, exc)
            raise
        countdown = RETRY_COUNTDOWNS[min(self.request.retries, len(RETRY_COUNTDOWNS) - 1)]
        logger.warning(
            "Retrying webhook event",
            extra={**log_context, "countdown": countdown, "error": str(exc)},
        )
        raise self.retry(exc=exc, countdown=countdown)


@celery.task(base=BillingTask, name="tenant_billing.grace_period_sweep")
def grace_period_sweep(notifications=True, expirations=True):
    service = GracePeriodService.from_config(current_app.config)
    return service.run_sweep(notifications=notifications, expirations=expirations).to_dict()
