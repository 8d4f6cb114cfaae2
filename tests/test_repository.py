import pytest

from tenant_billing.billing.repository import SubscriptionRepository
from tenant_billing.errors import DuplicateSubscriptionError
from tenant_billing.models import EventType, Subscription, SubscriptionStatus
from tenant_billing.utils import utcnow


@pytest.mark.db
def test_create_for_tenant(make_tenant, make_plan):
    tenant = make_tenant(external_customer_id="cus_123")
    plan = make_plan(slug="starter")

    subscription = SubscriptionRepository.create_for_tenant(tenant, plan, provider="stripe")

    assert subscription.id is not None
    assert subscription.status == SubscriptionStatus.NONE
    assert subscription.external_customer_id == "cus_123"
    event = subscription.events.one()
    assert event.type == EventType.CREATED
    assert event.data == {"plan": "starter", "status": "none"}


@pytest.mark.db
def test_second_open_subscription_is_rejected(make_tenant, make_plan):
    tenant = make_tenant()
    plan = make_plan()
    SubscriptionRepository.create_for_tenant(tenant, plan)

    with pytest.raises(DuplicateSubscriptionError):
        SubscriptionRepository.create_for_tenant(tenant, plan)

    assert Subscription.query.filter_by(tenant_id=tenant.id).count() == 1


@pytest.mark.db
def test_expired_subscription_does_not_block_a_new_one(make_subscription, make_plan):
    expired = make_subscription(status=SubscriptionStatus.EXPIRED)

    fresh = SubscriptionRepository.create_for_tenant(expired.tenant, make_plan())

    assert SubscriptionRepository.get_open_for_tenant(expired.tenant_id) is fresh
    assert SubscriptionRepository.get_latest_for_tenant(expired.tenant_id) is fresh


@pytest.mark.db
def test_lookups(make_subscription):
    subscription = make_subscription(external_subscription_id="sub_abc")

    assert SubscriptionRepository.get_by_external_id("sub_abc") is subscription
    assert SubscriptionRepository.get_by_external_id("sub_missing") is None
    assert SubscriptionRepository.get_by_external_id(None) is None
    assert SubscriptionRepository.get_by_id(subscription.id) is subscription


@pytest.mark.db
def test_list_canceled_orders_by_end(make_subscription):
    now = utcnow()
    later = make_subscription(status=SubscriptionStatus.CANCELED, ends_at=now)
    earlier = make_subscription(status=SubscriptionStatus.CANCELED, ends_at=now.replace(year=now.year - 1))
    make_subscription(status=SubscriptionStatus.ACTIVE)

    assert SubscriptionRepository.list_canceled() == [earlier, later]
