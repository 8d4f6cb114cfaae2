import logging

from sqlalchemy.exc import IntegrityError

from tenant_billing.errors import DuplicateSubscriptionError
from tenant_billing.extensions import db
from tenant_billing.models import Subscription, SubscriptionEvent, SubscriptionStatus, EventType
from tenant_billing.utils import utcnow

logger = logging.getLogger(__name__)


class SubscriptionRepository:
    """
    Explicit lookups for subscriptions.

    A tenant owns at most one open (non-expired) subscription; every caller
    that needs "the tenant's subscription" goes through ``get_open_for_tenant``.
    """

    @staticmethod
    def get_open_for_tenant(tenant_id, for_update=False):
        query = Subscription.query.filter(
            Subscription.tenant_id == tenant_id,
            Subscription.status != SubscriptionStatus.EXPIRED,
        )
        if for_update:
            query = query.with_for_update()
        return query.one_or_none()

    @staticmethod
    def get_latest_for_tenant(tenant_id):
        return (
            Subscription.query
            .filter_by(tenant_id=tenant_id)
            .order_by(Subscription.id.desc())
            .first()
        )

    @staticmethod
    def get_by_external_id(external_subscription_id, for_update=False):
        if not external_subscription_id:
            return None
        query = Subscription.query.filter_by(external_subscription_id=external_subscription_id)
        if for_update:
            query = query.with_for_update()
        return query.one_or_none()

    @staticmethod
    def get_by_id(subscription_id):
        return db.session.get(Subscription, subscription_id)

    @staticmethod
    def list_canceled():
        return (
            Subscription.query
            .filter(
                Subscription.status == SubscriptionStatus.CANCELED,
                Subscription.ends_at.isnot(None),
            )
            .order_by(Subscription.ends_at)
            .all()
        )

    @staticmethod
    def create_for_tenant(
        tenant,
        plan,
        status=SubscriptionStatus.NONE,
        provider=None,
        external_event_id=None,
        commit=True,
        **fields,
    ):
        """
        Create a subscription row and its ``created`` event.

        Raises DuplicateSubscriptionError when the tenant already has an open
        subscription, whether detected up front or by the partial unique index.
        """
        if SubscriptionRepository.get_open_for_tenant(tenant.id) is not None:
            raise DuplicateSubscriptionError(tenant.id)

        status = SubscriptionStatus(status)
        now = utcnow()
        # Set by key so the row only enters the session inside the savepoint.
        subscription = Subscription(
            tenant_id=tenant.id,
            plan_id=plan.id,
            status=status,
            provider=provider,
            external_customer_id=fields.pop("external_customer_id", tenant.external_customer_id),
            billing_metadata={},
            created_at=now,
            updated_at=now,
            **fields,
        )
        try:
            with db.session.begin_nested():
                db.session.add(subscription)
        except IntegrityError:
            raise DuplicateSubscriptionError(tenant.id) from None

        SubscriptionEvent.record(
            subscription,
            EventType.CREATED,
            {"plan": plan.slug, "status": subscription.status.value},
            external_event_id=external_event_id,
        )
        if commit:
            db.session.commit()

        logger.info(
            "Subscription created",
            extra={
                "tenant_id": tenant.id,
                "subscription_id": subscription.id,
                "status": subscription.status.value,
            },
        )
        return subscription
