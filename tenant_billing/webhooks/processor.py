import logging
import time

from tenant_billing.billing.repository import SubscriptionRepository
from tenant_billing.billing.state_machine import PLAN_CHANGE_STATES, SubscriptionStateManager
from tenant_billing.errors import (
    DuplicateEventError,
    DuplicateSubscriptionError,
    InvalidTransition,
    SubscriptionNotFound,
    ValidationError,
)
from tenant_billing.extensions import db
from tenant_billing.metrics import webhook_events_total, webhook_processing_seconds
from tenant_billing.models import EventType, Plan, SubscriptionEvent, SubscriptionStatus, Tenant
from tenant_billing.notifications import NotificationService
from tenant_billing.utils import from_timestamp
from tenant_billing.webhooks.ledger import WebhookLedger

logger = logging.getLogger(__name__)

# Outcomes
PROCESSED = "processed"
DUPLICATE = "duplicate"
IGNORED = "ignored"
DROPPED = "dropped"

# Rejections that replaying the event cannot fix.
DROPPABLE_ERRORS = (InvalidTransition, DuplicateSubscriptionError)


def _first_item_price(obj):
    items = (obj.get("items") or {}).get("data") or []
    if not items:
        return None
    return (items[0].get("price") or {}).get("id")


def _period(obj):
    start = obj.get("current_period_start")
    end = obj.get("current_period_end")
    items = (obj.get("items") or {}).get("data") or []
    if start is None and end is None and items:
        start = items[0].get("current_period_start")
        end = items[0].get("current_period_end")
    return from_timestamp(start), from_timestamp(end)


class WebhookProcessor:
    """
    Applies a normalized provider event to local subscription state.

    The ledger row and every derived write share one transaction. Handlers
    run inside a savepoint so a rejected transition can be discarded while
    the ledger row is still committed.
    """

    HANDLED_EVENTS = frozenset(
        {
            "checkout.session.completed",
            "customer.subscription.created",
            "customer.subscription.updated",
            "customer.subscription.deleted",
            "customer.subscription.trial_will_end",
            "invoice.payment_succeeded",
            "invoice.payment_failed",
        }
    )

    def __init__(self, state_manager=None, notifier=NotificationService):
        self.state_manager = state_manager or SubscriptionStateManager()
        self.notifier = notifier
        self._after_commit = []
        self._handlers = {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.created": self._handle_subscription_created,
            "customer.subscription.updated": self._handle_subscription_updated,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "customer.subscription.trial_will_end": self._handle_trial_will_end,
            "invoice.payment_succeeded": self._handle_payment_succeeded,
            "invoice.payment_failed": self._handle_payment_failed,
        }

    @classmethod
    def from_config(cls, config, **kwargs):
        kwargs.setdefault("state_manager", SubscriptionStateManager.from_config(config))
        return cls(**kwargs)

    @classmethod
    def handles(cls, event_type):
        return event_type in cls.HANDLED_EVENTS

    def process(self, provider, event):
        """Apply ``event`` once. Returns the outcome string."""
        event_id = event["id"]
        event_type = event["type"]
        log_context = {"provider": provider, "event_id": event_id, "event_type": event_type}
        self._after_commit = []
        started = time.monotonic()

        try:
            WebhookLedger.record(provider, event_id, event_type)
        except DuplicateEventError:
            logger.info("Webhook event already processed", extra=log_context)
            webhook_events_total.labels(provider=provider, outcome=DUPLICATE).inc()
            return DUPLICATE

        try:
            handler = self._handlers.get(event_type)
            if handler is None:
                outcome = IGNORED
                logger.info("Webhook event type not handled", extra=log_context)
            else:
                obj = (event.get("data") or {}).get("object") or {}
                try:
                    with db.session.begin_nested():
                        handler(obj, event_id, provider)
                    outcome = PROCESSED
                except DROPPABLE_ERRORS as exc:
                    outcome = DROPPED
                    logger.warning(
                        "Webhook event dropped",
                        extra={**log_context, "reason": str(exc)},
                    )
            db.session.commit()
        except Exception:
            db.session.rollback()
            webhook_events_total.labels(provider=provider, outcome="error").inc()
            raise

        webhook_processing_seconds.labels(provider=provider).observe(time.monotonic() - started)
        webhook_events_total.labels(provider=provider, outcome=outcome).inc()
        logger.info("Webhook event applied", extra={**log_context, "outcome": outcome})

        for callback in self._after_commit:
            callback()
        return outcome

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    @staticmethod
    def _subscription_for(external_subscription_id):
        if not external_subscription_id:
            raise ValidationError("Event does not reference a subscription")
        subscription = SubscriptionRepository.get_by_external_id(
            external_subscription_id, for_update=True
        )
        if subscription is None:
            # Events can overtake the one that creates the subscription.
            raise SubscriptionNotFound(f"No subscription for '{external_subscription_id}'")
        return subscription

    @staticmethod
    def _tenant_for(obj):
        metadata = obj.get("metadata") or {}
        tenant = None
        if metadata.get("tenant_id"):
            tenant = db.session.get(Tenant, int(metadata["tenant_id"]))
        if tenant is None and obj.get("customer"):
            tenant = Tenant.query.filter_by(external_customer_id=obj["customer"]).one_or_none()
        if tenant is None:
            raise ValidationError("Event does not identify a known tenant")
        return tenant

    @staticmethod
    def _plan_for(obj):
        metadata = obj.get("metadata") or {}
        price_id = _first_item_price(obj)
        plan = None
        if price_id:
            plan = Plan.query.filter_by(external_price_id=price_id).one_or_none()
        if plan is None and metadata.get("plan_id"):
            plan = db.session.get(Plan, int(metadata["plan_id"]))
        return plan

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _handle_checkout_completed(self, obj, event_id, provider):
        tenant = self._tenant_for(obj)
        external_id = obj.get("subscription")
        if obj.get("customer") and not tenant.external_customer_id:
            tenant.external_customer_id = obj["customer"]

        subscription = SubscriptionRepository.get_open_for_tenant(tenant.id, for_update=True)
        if subscription is None:
            plan = self._plan_for(obj)
            if plan is None:
                raise ValidationError("Checkout does not reference a known plan")
            SubscriptionRepository.create_for_tenant(
                tenant,
                plan,
                status=SubscriptionStatus.ACTIVE,
                provider=provider,
                external_subscription_id=external_id,
                external_event_id=event_id,
                commit=False,
            )
            return

        self.state_manager.activate_subscription(
            subscription,
            external_subscription_id=external_id,
            external_event_id=event_id,
            commit=False,
        )

    def _handle_subscription_created(self, obj, event_id, provider):
        external_id = obj.get("id")
        if not external_id:
            raise ValidationError("Subscription event has no id")
        if SubscriptionRepository.get_by_external_id(external_id) is not None:
            return

        tenant = self._tenant_for(obj)
        open_subscription = SubscriptionRepository.get_open_for_tenant(tenant.id, for_update=True)
        if open_subscription is not None:
            if open_subscription.external_subscription_id:
                raise DuplicateSubscriptionError(tenant.id)
            # Link the row created by checkout to the provider subscription.
            open_subscription.external_subscription_id = external_id
            open_subscription.provider = provider
            self.state_manager.record_state_change(
                open_subscription,
                open_subscription.status,
                open_subscription.status,
                {"external_subscription_id": external_id},
                external_event_id=event_id,
                commit=False,
            )
            return

        plan = self._plan_for(obj)
        if plan is None:
            raise ValidationError("Subscription does not reference a known plan")

        remote_status = obj.get("status")
        status = {
            "trialing": SubscriptionStatus.TRIALING,
            "active": SubscriptionStatus.ACTIVE,
            "past_due": SubscriptionStatus.PAST_DUE,
        }.get(remote_status, SubscriptionStatus.NONE)
        period_start, period_end = _period(obj)

        SubscriptionRepository.create_for_tenant(
            tenant,
            plan,
            status=status,
            provider=provider,
            external_subscription_id=external_id,
            external_customer_id=obj.get("customer") or tenant.external_customer_id,
            trial_ends_at=from_timestamp(obj.get("trial_end")) if status == SubscriptionStatus.TRIALING else None,
            billing_period_start=period_start,
            billing_period_end=period_end,
            external_event_id=event_id,
            commit=False,
        )

    def _handle_subscription_updated(self, obj, event_id, provider):
        subscription = self._subscription_for(obj.get("id"))
        manager = self.state_manager
        local = subscription.status
        remote = obj.get("status")

        plan = self._plan_for(obj)
        if plan is not None and plan.id != subscription.plan_id and local in PLAN_CHANGE_STATES:
            manager.change_plan(subscription, plan, external_event_id=event_id, commit=False)

        if remote == "active" and local in (SubscriptionStatus.TRIALING, SubscriptionStatus.PAST_DUE):
            manager.activate_subscription(subscription, external_event_id=event_id, commit=False)
        elif remote in ("past_due", "unpaid") and local == SubscriptionStatus.ACTIVE:
            manager.mark_as_past_due(subscription, external_event_id=event_id, commit=False)
        elif remote in ("canceled", "incomplete_expired") and manager.can_transition_to(
            subscription, SubscriptionStatus.CANCELED
        ):
            manager.cancel_subscription(
                subscription, immediate=True, reason="provider_update",
                external_event_id=event_id, commit=False,
            )

        period_start, period_end = _period(obj)
        if period_end and subscription.status in (
            SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE
        ):
            manager.update_billing_period(
                subscription, period_start, period_end, external_event_id=event_id, commit=False
            )

    def _handle_subscription_deleted(self, obj, event_id, provider):
        subscription = self._subscription_for(obj.get("id"))
        self.state_manager.cancel_subscription(
            subscription,
            immediate=True,
            reason=(obj.get("cancellation_details") or {}).get("reason"),
            feedback=(obj.get("cancellation_details") or {}).get("feedback"),
            external_event_id=event_id,
            commit=False,
        )

    def _handle_trial_will_end(self, obj, event_id, provider):
        subscription = self._subscription_for(obj.get("id"))
        trial_end = from_timestamp(obj.get("trial_end")) or subscription.trial_ends_at
        SubscriptionEvent.record(
            subscription,
            EventType.TRIAL_WILL_END,
            {"trial_end": trial_end.isoformat() if trial_end else None},
            external_event_id=event_id,
        )
        tenant = subscription.tenant
        self._after_commit.append(lambda: self.notifier.notify_trial_ending(tenant, trial_end))

    def _handle_payment_succeeded(self, obj, event_id, provider):
        if not obj.get("subscription"):
            # One-off invoice
            return
        subscription = self._subscription_for(obj.get("subscription"))
        if subscription.status == SubscriptionStatus.PAST_DUE:
            self.state_manager.activate_subscription(
                subscription, external_event_id=event_id, commit=False
            )
        SubscriptionEvent.record(
            subscription,
            EventType.PAYMENT_SUCCEEDED,
            {"invoice_id": obj.get("id"), "amount_paid": obj.get("amount_paid")},
            external_event_id=event_id,
        )

    def _handle_payment_failed(self, obj, event_id, provider):
        subscription = self._subscription_for(obj.get("subscription"))
        self.state_manager.mark_as_past_due(
            subscription,
            external_event_id=event_id,
            data={"invoice_id": obj.get("id"), "attempt_count": obj.get("attempt_count")},
            commit=False,
        )
