import logging
from dataclasses import dataclass

from tenant_billing.billing.repository import SubscriptionRepository
from tenant_billing.billing.state_machine import SubscriptionStateManager
from tenant_billing.errors import BillingError, InvalidTransition, MissingPrerequisite
from tenant_billing.extensions import db
from tenant_billing.metrics import grace_notifications_total
from tenant_billing.models import (
    EventType,
    GracePeriodExtension,
    SubscriptionEvent,
    SubscriptionStatus,
)
from tenant_billing.notifications import NotificationService
from tenant_billing.utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    notifications_due: int = 0
    notifications_sent: int = 0
    expirations_due: int = 0
    expired: int = 0
    errors: int = 0

    def to_dict(self):
        return dict(self.__dict__)


class GracePeriodService:
    """
    Grace period bookkeeping for canceled subscriptions.

    The grace window starts at ``ends_at`` and lasts ``grace_period_days``
    plus any extension days recorded on the subscription. Notifications go
    out on the configured day offsets into the window; each day is sent at
    most once per subscription.
    """

    def __init__(self, state_manager=None, notifier=NotificationService,
                 grace_period_days=7, warning_days=(1, 3, 7)):
        self.grace_period_days = grace_period_days
        self.warning_days = sorted({int(day) for day in warning_days})
        self.state_manager = state_manager or SubscriptionStateManager(grace_period_days)
        self.notifier = notifier

    @classmethod
    def from_config(cls, config, **kwargs):
        grace_days = int(config.get("BILLING_GRACE_PERIOD_DAYS", 7))
        kwargs.setdefault("state_manager", SubscriptionStateManager(grace_days))
        return cls(
            grace_period_days=grace_days,
            warning_days=config.get("BILLING_GRACE_PERIOD_WARNINGS", (1, 3, 7)),
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Window calculations
    # ------------------------------------------------------------------

    def calculate_grace_period_end_date(self, subscription):
        if subscription.ends_at is None:
            raise MissingPrerequisite("ends_at", "Subscription has no end date")
        return subscription.grace_period_end(self.grace_period_days, include_extensions=False)

    def effective_grace_period_end(self, subscription):
        if subscription.ends_at is None:
            raise MissingPrerequisite("ends_at", "Subscription has no end date")
        return subscription.grace_period_end(self.grace_period_days)

    def is_within_grace_period(self, subscription, now=None):
        if subscription.status != SubscriptionStatus.CANCELED or subscription.ends_at is None:
            return False
        now = now or utcnow()
        return now <= self.effective_grace_period_end(subscription)

    # ------------------------------------------------------------------
    # Sweep queries
    # ------------------------------------------------------------------

    def get_subscriptions_in_grace_period(self):
        now = utcnow()
        return [
            subscription
            for subscription in SubscriptionRepository.list_canceled()
            if subscription.ends_at <= now and self.is_within_grace_period(subscription, now)
        ]

    def get_subscriptions_needing_notifications(self):
        now = utcnow()
        due = []
        for subscription in self.get_subscriptions_in_grace_period():
            elapsed_days = (now - subscription.ends_at).days
            if elapsed_days not in self.warning_days:
                continue
            if elapsed_days in subscription.notified_days:
                continue
            grace_end = self.effective_grace_period_end(subscription)
            due.append(
                {
                    "subscription": subscription,
                    "day_number": elapsed_days,
                    "days_until_expiration": max(0, (grace_end - now).days),
                }
            )
        return due

    def get_subscriptions_with_expired_grace_period(self):
        now = utcnow()
        return [
            subscription
            for subscription in SubscriptionRepository.list_canceled()
            if self.effective_grace_period_end(subscription) < now
        ]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def send_grace_period_notification(self, subscription, day_number):
        """
        Mail the tenant's billing contact and record the day as sent.

        Returns False, without raising, when the subscription is outside its
        grace window or the tenant cannot be reached.
        """
        log_context = {"subscription_id": subscription.id, "day_number": day_number}

        if not self.is_within_grace_period(subscription):
            logger.warning("Subscription not in grace period, notification skipped", extra=log_context)
            grace_notifications_total.labels(result="skipped").inc()
            return False

        tenant = subscription.tenant
        if tenant is None:
            logger.error("Subscription has no associated tenant", extra=log_context)
            grace_notifications_total.labels(result="skipped").inc()
            return False
        if not tenant.billing_email:
            logger.error("Tenant has no billing email", extra={**log_context, "tenant_id": tenant.id})
            grace_notifications_total.labels(result="skipped").inc()
            return False

        grace_end = self.effective_grace_period_end(subscription)
        days_remaining = max(0, (grace_end - utcnow()).days)
        if not self.notifier.notify_grace_period(tenant, day_number, grace_end, days_remaining):
            grace_notifications_total.labels(result="failed").inc()
            return False

        SubscriptionEvent.record(
            subscription,
            EventType.GRACE_PERIOD_NOTIFICATION,
            {
                "day_number": day_number,
                "email": tenant.billing_email,
                "grace_period_ends_at": grace_end.isoformat(),
            },
        )
        self.mark_notification_as_sent(subscription, day_number, commit=False)
        db.session.commit()

        grace_notifications_total.labels(result="sent").inc()
        logger.info("Grace period notification sent", extra={**log_context, "tenant_id": tenant.id})
        return True

    def mark_notification_as_sent(self, subscription, day_number, commit=True):
        subscription.mark_day_notified(day_number)
        if commit:
            db.session.commit()
        return subscription

    def extend_grace_period(self, subscription, extra_days, reason=None):
        if subscription.status != SubscriptionStatus.CANCELED:
            raise InvalidTransition(
                subscription.status.value, SubscriptionStatus.CANCELED.value, "extend_grace_period"
            )
        if subscription.ends_at is None:
            raise MissingPrerequisite("ends_at", "Subscription has no end date")
        if extra_days <= 0:
            raise ValueError("extra_days must be positive")

        previous_end = self.effective_grace_period_end(subscription)
        subscription.add_grace_period_extension(
            GracePeriodExtension(days=int(extra_days), reason=reason, at=utcnow())
        )
        new_end = self.effective_grace_period_end(subscription)

        SubscriptionEvent.record(
            subscription,
            EventType.GRACE_PERIOD_EXTENDED,
            {
                "additional_days": int(extra_days),
                "reason": reason,
                "previous_grace_period_end": previous_end.isoformat(),
                "new_grace_period_end": new_end.isoformat(),
            },
        )
        db.session.commit()

        logger.info(
            "Grace period extended",
            extra={
                "subscription_id": subscription.id,
                "tenant_id": subscription.tenant_id,
                "additional_days": extra_days,
                "new_grace_period_end": new_end.isoformat(),
            },
        )
        return subscription

    def handle_grace_period_expiration(self, subscription):
        if subscription.status != SubscriptionStatus.CANCELED:
            raise InvalidTransition(
                subscription.status.value, SubscriptionStatus.EXPIRED.value, "handle_grace_period_expiration"
            )
        if self.effective_grace_period_end(subscription) >= utcnow():
            raise InvalidTransition(
                SubscriptionStatus.CANCELED.value,
                SubscriptionStatus.EXPIRED.value,
                "handle_grace_period_expiration",
            )
        return self.state_manager.expire_subscription(subscription)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_grace_period_status(self, subscription):
        status = {
            "in_grace_period": False,
            "grace_period_end": None,
            "days_remaining": 0,
            "warnings_sent": [],
            "extensions": [],
        }
        if subscription.status != SubscriptionStatus.CANCELED:
            return status
        try:
            grace_end = self.effective_grace_period_end(subscription)
            in_grace = self.is_within_grace_period(subscription)
            status.update(
                {
                    "in_grace_period": in_grace,
                    "grace_period_end": grace_end.isoformat(),
                    "days_remaining": max(0, (grace_end - utcnow()).days) if in_grace else 0,
                    "warnings_sent": sorted(subscription.notified_days),
                    "extensions": [ext.to_dict() for ext in subscription.grace_period_extensions],
                }
            )
        except (BillingError, KeyError, TypeError, ValueError) as exc:
            logger.warning(
                "Could not compute grace period status",
                extra={"subscription_id": subscription.id, "error": str(exc)},
            )
            status["error"] = str(exc)
        return status

    # ------------------------------------------------------------------
    # Periodic sweep
    # ------------------------------------------------------------------

    def run_sweep(self, notifications=True, expirations=True, dry_run=False):
        """Send due notifications, then expire subscriptions past their window."""
        result = SweepResult()

        if notifications:
            due = self.get_subscriptions_needing_notifications()
            result.notifications_due = len(due)
            for item in due:
                if dry_run:
                    continue
                if self.send_grace_period_notification(item["subscription"], item["day_number"]):
                    result.notifications_sent += 1

        if expirations:
            expiring = self.get_subscriptions_with_expired_grace_period()
            result.expirations_due = len(expiring)
            for subscription in expiring:
                if dry_run:
                    continue
                try:
                    if self.state_manager.process_grace_period(subscription) is not None:
                        result.expired += 1
                except InvalidTransition as exc:
                    # Another sweep got there first.
                    db.session.rollback()
                    result.errors += 1
                    logger.warning(
                        "Grace expiration skipped",
                        extra={"subscription_id": subscription.id, "error": str(exc)},
                    )

        logger.info("Grace period sweep finished", extra={"dry_run": dry_run, **result.to_dict()})
        return result
