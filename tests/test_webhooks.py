import json
import time
from unittest.mock import Mock, patch

import pytest
from kombu.exceptions import OperationalError

from tenant_billing.errors import SubscriptionNotFound
from tenant_billing.extensions import db
from tenant_billing.models import (
    EventType,
    ProcessedWebhookEvent,
    Subscription,
    SubscriptionEvent,
    SubscriptionStatus,
)
from tenant_billing.utils import from_timestamp
from tenant_billing.webhooks.ledger import WebhookLedger
from tenant_billing.webhooks.processor import WebhookProcessor

pytestmark = pytest.mark.webhook


@pytest.fixture
def notifier():
    return Mock()


@pytest.fixture
def processor(notifier):
    return WebhookProcessor(notifier=notifier)


def payment_failed(subscription, stripe_event, event_id=None):
    return stripe_event(
        "invoice.payment_failed",
        {"id": "in_123", "subscription": subscription.external_subscription_id, "attempt_count": 1},
        event_id=event_id,
    )


def events_of(subscription, event_type):
    return SubscriptionEvent.query.filter_by(subscription_id=subscription.id, type=event_type).all()


# Ingestion endpoint

def test_rejects_invalid_signature(post_webhook, stripe_event):
    response = post_webhook(stripe_event("invoice.payment_failed", {}), secret="whsec_wrong")

    assert response.status_code == 401
    assert response.get_json() == {"error": "Invalid signature"}
    assert ProcessedWebhookEvent.query.count() == 0


def test_rejects_missing_signature(client):
    response = client.post("/webhooks/billing", data=json.dumps({"id": "evt_1"}))

    assert response.status_code == 401


def test_rejects_stale_signature(post_webhook, stripe_event):
    response = post_webhook(
        stripe_event("invoice.payment_failed", {}), timestamp=int(time.time()) - 3600
    )

    assert response.status_code == 401


def test_rejects_payload_without_type(post_webhook):
    response = post_webhook({"id": "evt_123", "data": {"object": {}}})

    assert response.status_code == 400


def test_unknown_event_type_is_acknowledged(post_webhook, stripe_event):
    response = post_webhook(stripe_event("customer.tax_id.created", {"id": "txi_1"}))

    assert response.status_code == 200
    assert response.get_json() == {"status": "Event ignored"}
    assert ProcessedWebhookEvent.query.count() == 0


@pytest.mark.db
def test_payment_failed_marks_subscription_past_due(post_webhook, stripe_event, make_subscription):
    subscription = make_subscription(status=SubscriptionStatus.ACTIVE, external_subscription_id="sub_pf")
    body = payment_failed(subscription, stripe_event)

    response = post_webhook(body)

    assert response.status_code == 202
    assert subscription.status == SubscriptionStatus.PAST_DUE
    (event,) = events_of(subscription, EventType.PAYMENT_FAILED)
    assert event.external_event_id == body["id"]
    assert event.data["invoice_id"] == "in_123"
    assert WebhookLedger.is_processed("stripe", body["id"])


@pytest.mark.db
def test_redelivered_event_is_applied_once(post_webhook, stripe_event, make_subscription):
    subscription = make_subscription(status=SubscriptionStatus.ACTIVE, external_subscription_id="sub_dup")
    body = payment_failed(subscription, stripe_event)

    first = post_webhook(body)
    second = post_webhook(body)

    assert first.status_code == 202
    assert second.status_code == 200
    assert second.get_json() == {"status": "Event already processed"}
    assert len(events_of(subscription, EventType.PAYMENT_FAILED)) == 1
    assert ProcessedWebhookEvent.query.filter_by(external_event_id=body["id"]).count() == 1


@pytest.mark.db
def test_enqueue_failure_returns_503(post_webhook, stripe_event, make_subscription):
    subscription = make_subscription(status=SubscriptionStatus.ACTIVE, external_subscription_id="sub_q")

    with patch(
        "tenant_billing.workers.tasks.process_webhook_event.apply_async",
        side_effect=OperationalError("broker down"),
    ):
        response = post_webhook(payment_failed(subscription, stripe_event))

    assert response.status_code == 503
    assert subscription.status == SubscriptionStatus.ACTIVE


# Processor

@pytest.mark.db
def test_processor_reports_duplicates(processor, stripe_event, make_subscription):
    subscription = make_subscription(status=SubscriptionStatus.ACTIVE, external_subscription_id="sub_p")
    event = payment_failed(subscription, stripe_event)

    assert processor.process("stripe", event) == "processed"
    assert processor.process("stripe", event) == "duplicate"
    assert len(events_of(subscription, EventType.PAYMENT_FAILED)) == 1


@pytest.mark.db
def test_inapplicable_transition_is_dropped(processor, stripe_event, make_subscription):
    subscription = make_subscription(status=SubscriptionStatus.ACTIVE, external_subscription_id="sub_twice")

    assert processor.process("stripe", payment_failed(subscription, stripe_event)) == "processed"
    second = payment_failed(subscription, stripe_event)
    assert processor.process("stripe", second) == "dropped"

    assert subscription.status == SubscriptionStatus.PAST_DUE
    assert len(events_of(subscription, EventType.PAYMENT_FAILED)) == 1
    # The ledger keeps the dropped event so redelivery is not retried.
    assert WebhookLedger.is_processed("stripe", second["id"])


@pytest.mark.db
def test_unknown_subscription_rolls_back_ledger(processor, stripe_event):
    event = stripe_event("invoice.payment_failed", {"id": "in_1", "subscription": "sub_unknown"})

    with pytest.raises(SubscriptionNotFound):
        processor.process("stripe", event)

    assert not WebhookLedger.is_processed("stripe", event["id"])


@pytest.mark.db
def test_unhandled_type_is_recorded_as_ignored(processor, stripe_event):
    event = stripe_event("charge.refunded", {"id": "ch_1"})

    assert processor.process("stripe", event) == "ignored"
    assert WebhookLedger.is_processed("stripe", event["id"])


@pytest.mark.db
def test_checkout_creates_active_subscription(processor, stripe_event, make_tenant, make_plan):
    tenant = make_tenant()
    plan = make_plan()
    event = stripe_event(
        "checkout.session.completed",
        {
            "id": "cs_1",
            "customer": "cus_checkout",
            "subscription": "sub_checkout",
            "metadata": {"tenant_id": str(tenant.id), "plan_id": str(plan.id)},
        },
    )

    assert processor.process("stripe", event) == "processed"

    subscription = Subscription.query.filter_by(tenant_id=tenant.id).one()
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.plan_id == plan.id
    assert subscription.external_subscription_id == "sub_checkout"
    assert tenant.external_customer_id == "cus_checkout"
    assert events_of(subscription, EventType.CREATED)[0].external_event_id == event["id"]


@pytest.mark.db
def test_checkout_activates_trialing_subscription(processor, stripe_event, make_subscription):
    subscription = make_subscription(status=SubscriptionStatus.TRIALING)
    event = stripe_event(
        "checkout.session.completed",
        {"id": "cs_2", "subscription": "sub_after_trial", "metadata": {"tenant_id": str(subscription.tenant_id)}},
    )

    assert processor.process("stripe", event) == "processed"
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.external_subscription_id == "sub_after_trial"


@pytest.mark.db
def test_subscription_created_links_checkout_row(processor, stripe_event, make_subscription):
    subscription = make_subscription(status=SubscriptionStatus.ACTIVE)
    event = stripe_event(
        "customer.subscription.created",
        {"id": "sub_linked", "status": "active", "metadata": {"tenant_id": str(subscription.tenant_id)}},
    )

    assert processor.process("stripe", event) == "processed"
    assert subscription.external_subscription_id == "sub_linked"
    assert subscription.provider == "stripe"


@pytest.mark.db
def test_subscription_created_for_new_tenant(processor, stripe_event, make_tenant, make_plan):
    tenant = make_tenant(external_customer_id="cus_new")
    plan = make_plan()
    trial_end = int(time.time()) + 7 * 86400
    event = stripe_event(
        "customer.subscription.created",
        {
            "id": "sub_trial",
            "customer": "cus_new",
            "status": "trialing",
            "trial_end": trial_end,
            "items": {"data": [{"price": {"id": plan.external_price_id}}]},
        },
    )

    assert processor.process("stripe", event) == "processed"

    subscription = Subscription.query.filter_by(external_subscription_id="sub_trial").one()
    assert subscription.tenant_id == tenant.id
    assert subscription.status == SubscriptionStatus.TRIALING
    assert subscription.trial_ends_at == from_timestamp(trial_end)


@pytest.mark.db
def test_subscription_created_when_tenant_already_linked_is_dropped(processor, stripe_event, make_subscription):
    subscription = make_subscription(status=SubscriptionStatus.ACTIVE, external_subscription_id="sub_first")
    event = stripe_event(
        "customer.subscription.created",
        {"id": "sub_second", "status": "active", "metadata": {"tenant_id": str(subscription.tenant_id)}},
    )

    assert processor.process("stripe", event) == "dropped"
    assert Subscription.query.filter_by(tenant_id=subscription.tenant_id).count() == 1


@pytest.mark.db
def test_subscription_updated_changes_plan_and_period(processor, stripe_event, make_subscription, make_plan):
    subscription = make_subscription(status=SubscriptionStatus.ACTIVE, external_subscription_id="sub_up")
    pro = make_plan(slug="pro-up")
    start = int(time.time())
    end = start + 30 * 86400
    event = stripe_event(
        "customer.subscription.updated",
        {
            "id": "sub_up",
            "status": "active",
            "items": {"data": [{"price": {"id": pro.external_price_id}}]},
            "current_period_start": start,
            "current_period_end": end,
        },
    )

    assert processor.process("stripe", event) == "processed"
    assert subscription.plan_id == pro.id
    assert subscription.billing_period_end == from_timestamp(end)
    assert len(events_of(subscription, EventType.PLAN_CHANGED)) == 1


@pytest.mark.db
def test_subscription_updated_to_past_due(processor, stripe_event, make_subscription):
    subscription = make_subscription(status=SubscriptionStatus.ACTIVE, external_subscription_id="sub_unpaid")
    event = stripe_event("customer.subscription.updated", {"id": "sub_unpaid", "status": "unpaid"})

    assert processor.process("stripe", event) == "processed"
    assert subscription.status == SubscriptionStatus.PAST_DUE


@pytest.mark.db
def test_subscription_deleted_cancels_immediately(processor, stripe_event, make_subscription):
    subscription = make_subscription(status=SubscriptionStatus.ACTIVE, external_subscription_id="sub_del")
    event = stripe_event(
        "customer.subscription.deleted",
        {"id": "sub_del", "cancellation_details": {"reason": "cancellation_requested"}},
    )

    assert processor.process("stripe", event) == "processed"
    assert subscription.status == SubscriptionStatus.CANCELED
    assert subscription.ends_at is not None
    (canceled,) = events_of(subscription, EventType.CANCELED)
    assert canceled.data["immediate"] is True
    assert canceled.data["reason"] == "cancellation_requested"


@pytest.mark.db
def test_trial_will_end_notifies_after_commit(processor, notifier, stripe_event, make_subscription):
    subscription = make_subscription(status=SubscriptionStatus.TRIALING, external_subscription_id="sub_tw")
    trial_end = int(time.time()) + 3 * 86400
    event = stripe_event("customer.subscription.trial_will_end", {"id": "sub_tw", "trial_end": trial_end})

    assert processor.process("stripe", event) == "processed"

    notifier.notify_trial_ending.assert_called_once_with(subscription.tenant, from_timestamp(trial_end))
    assert len(events_of(subscription, EventType.TRIAL_WILL_END)) == 1


@pytest.mark.db
def test_payment_succeeded_recovers_past_due(processor, stripe_event, make_subscription):
    subscription = make_subscription(status=SubscriptionStatus.PAST_DUE, external_subscription_id="sub_ok")
    event = stripe_event(
        "invoice.payment_succeeded", {"id": "in_ok", "subscription": "sub_ok", "amount_paid": 4900}
    )

    assert processor.process("stripe", event) == "processed"
    assert subscription.status == SubscriptionStatus.ACTIVE
    (paid,) = events_of(subscription, EventType.PAYMENT_SUCCEEDED)
    assert paid.data == {"invoice_id": "in_ok", "amount_paid": 4900}


@pytest.mark.db
def test_payment_succeeded_without_subscription_is_a_no_op(processor, stripe_event):
    event = stripe_event("invoice.payment_succeeded", {"id": "in_one_off"})

    assert processor.process("stripe", event) == "processed"
    assert SubscriptionEvent.query.count() == 0


@pytest.mark.db
def test_handler_failure_leaves_no_partial_writes(processor, stripe_event, make_subscription):
    subscription = make_subscription(status=SubscriptionStatus.ACTIVE, external_subscription_id="sub_err")
    event = payment_failed(subscription, stripe_event)

    with patch.object(
        processor.state_manager, "mark_as_past_due", side_effect=RuntimeError("boom")
    ):
        with pytest.raises(RuntimeError):
            processor.process("stripe", event)

    db.session.expire_all()
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert not WebhookLedger.is_processed("stripe", event["id"])
