import logging
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from tenant_billing.billing.repository import SubscriptionRepository
from tenant_billing.errors import DuplicateSubscriptionError, InvalidTransition
from tenant_billing.extensions import db
from tenant_billing.metrics import subscription_transitions_total
from tenant_billing.models import EventType, SubscriptionEvent, SubscriptionStatus
from tenant_billing.models.subscription import EXTENSIONS_KEY, NOTIFICATIONS_KEY
from tenant_billing.utils import utcnow

logger = logging.getLogger(__name__)

S = SubscriptionStatus

TRANSITIONS = {
    S.NONE: frozenset({S.TRIALING}),
    S.TRIALING: frozenset({S.ACTIVE, S.CANCELED}),
    S.ACTIVE: frozenset({S.PAST_DUE, S.CANCELED}),
    S.PAST_DUE: frozenset({S.ACTIVE, S.CANCELED}),
    S.CANCELED: frozenset({S.EXPIRED}),
    S.EXPIRED: frozenset({S.TRIALING}),
}

PLAN_CHANGE_STATES = frozenset({S.TRIALING, S.ACTIVE, S.PAST_DUE})


def _iso(value):
    return value.isoformat() if value else None


class SubscriptionStateManager:
    """
    Authoritative subscription lifecycle.

    Every status change goes through one of the operations below. Each
    operation checks the current status against the transition graph, raises
    InvalidTransition when the edge is not allowed, mutates the row and
    appends its lifecycle event.

    Operations commit by default. Callers composing several writes into one
    transaction (the webhook processor) pass ``commit=False`` and commit
    themselves.
    """

    def __init__(self, grace_period_days=7):
        self.grace_period_days = grace_period_days

    @classmethod
    def from_config(cls, config):
        return cls(grace_period_days=int(config.get("BILLING_GRACE_PERIOD_DAYS", 7)))

    # ------------------------------------------------------------------
    # Graph queries
    # ------------------------------------------------------------------

    @staticmethod
    def is_valid_transition(current, target):
        return S(target) in TRANSITIONS.get(S(current), frozenset())

    @staticmethod
    def valid_transitions(state):
        return sorted(t.value for t in TRANSITIONS.get(S(state), frozenset()))

    def can_transition_to(self, subscription, target):
        return self.is_valid_transition(subscription.status, target)

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    def start_trial(self, subscription, days, external_event_id=None, commit=True):
        previous = self._guard(subscription, S.TRIALING, "start_trial")
        if previous == S.EXPIRED:
            # Reopening an expired row must not give the tenant a second open subscription.
            if SubscriptionRepository.get_open_for_tenant(subscription.tenant_id) is not None:
                raise DuplicateSubscriptionError(subscription.tenant_id)
        now = utcnow()

        subscription.status = S.TRIALING
        subscription.trial_ends_at = now + timedelta(days=days)
        if previous == S.EXPIRED:
            subscription.ends_at = None
            subscription.cancelled_at = None
            metadata = dict(subscription.billing_metadata or {})
            metadata.pop(EXTENSIONS_KEY, None)
            metadata.pop(NOTIFICATIONS_KEY, None)
            subscription.billing_metadata = metadata

        SubscriptionEvent.record(
            subscription,
            EventType.TRIAL_STARTED,
            {
                "previous_status": previous.value,
                "trial_days": days,
                "trial_ends_at": _iso(subscription.trial_ends_at),
            },
            external_event_id=external_event_id,
        )
        return self._finish(subscription, previous, commit)

    def activate_subscription(
        self, subscription, external_subscription_id=None, external_event_id=None, commit=True
    ):
        previous = self._guard(subscription, S.ACTIVE, "activate_subscription")

        subscription.status = S.ACTIVE
        subscription.trial_ends_at = None
        if external_subscription_id:
            subscription.external_subscription_id = external_subscription_id

        if previous == S.TRIALING:
            SubscriptionEvent.record(
                subscription,
                EventType.TRIAL_ENDED,
                {"previous_status": previous.value},
                external_event_id=external_event_id,
            )
        self.record_state_change(
            subscription,
            previous,
            S.ACTIVE,
            {"external_subscription_id": external_subscription_id},
            external_event_id=external_event_id,
            commit=False,
        )
        return self._finish(subscription, previous, commit)

    def mark_as_past_due(self, subscription, external_event_id=None, data=None, commit=True):
        previous = self._guard(subscription, S.PAST_DUE, "mark_as_past_due")

        subscription.status = S.PAST_DUE

        payload = {"previous_status": previous.value}
        payload.update(data or {})
        SubscriptionEvent.record(
            subscription, EventType.PAYMENT_FAILED, payload, external_event_id=external_event_id
        )
        logger.warning(
            "Subscription marked as past due",
            extra={"subscription_id": subscription.id, "tenant_id": subscription.tenant_id},
        )
        return self._finish(subscription, previous, commit)

    def cancel_subscription(
        self,
        subscription,
        immediate=False,
        reason=None,
        feedback=None,
        external_event_id=None,
        commit=True,
    ):
        previous = self._guard(subscription, S.CANCELED, "cancel_subscription")
        now = utcnow()

        if immediate:
            ends_at = now
        elif previous == S.TRIALING and subscription.trial_ends_at:
            ends_at = subscription.trial_ends_at
        else:
            ends_at = subscription.billing_period_end or now

        subscription.status = S.CANCELED
        subscription.ends_at = ends_at
        subscription.cancelled_at = now
        subscription.trial_ends_at = None

        payload = {
            "previous_status": previous.value,
            "immediate": immediate,
            "ends_at": _iso(ends_at),
        }
        if reason:
            payload["reason"] = reason
        if feedback:
            payload["feedback"] = feedback
        SubscriptionEvent.record(
            subscription, EventType.CANCELED, payload, external_event_id=external_event_id
        )
        return self._finish(subscription, previous, commit)

    def expire_subscription(self, subscription, external_event_id=None, commit=True):
        """Callers decide eligibility; this only enforces the graph."""
        previous = self._guard(subscription, S.EXPIRED, "expire_subscription")

        subscription.status = S.EXPIRED
        subscription.ends_at = utcnow()

        SubscriptionEvent.record(
            subscription,
            EventType.EXPIRED,
            {"previous_status": previous.value},
            external_event_id=external_event_id,
        )
        return self._finish(subscription, previous, commit)

    def process_grace_period(self, subscription, commit=True):
        """
        Expire a canceled subscription whose grace window has elapsed.

        Returns the expired subscription, or None when nothing changed.
        """
        if subscription.status != S.CANCELED or subscription.ends_at is None:
            return None

        grace_end = subscription.grace_period_end(self.grace_period_days)
        if utcnow() <= grace_end:
            return None

        return self.expire_subscription(subscription, commit=commit)

    def change_plan(self, subscription, new_plan, external_event_id=None, commit=True):
        if subscription.status not in PLAN_CHANGE_STATES:
            raise InvalidTransition(subscription.status.value, subscription.status.value, "change_plan")
        if subscription.plan_id == new_plan.id:
            return subscription

        old_plan = subscription.plan
        subscription.plan = new_plan
        SubscriptionEvent.record(
            subscription,
            EventType.PLAN_CHANGED,
            {
                "from_plan": old_plan.slug if old_plan else None,
                "to_plan": new_plan.slug,
            },
            external_event_id=external_event_id,
        )
        logger.info(
            "Subscription plan changed",
            extra={"subscription_id": subscription.id, "to_plan": new_plan.slug},
        )
        if commit:
            self._commit()
        return subscription

    def update_billing_period(self, subscription, start, end, external_event_id=None, commit=True):
        if subscription.is_terminal:
            raise InvalidTransition(S.EXPIRED.value, S.EXPIRED.value, "update_billing_period")
        if subscription.billing_period_start == start and subscription.billing_period_end == end:
            return subscription

        subscription.billing_period_start = start
        subscription.billing_period_end = end
        SubscriptionEvent.record(
            subscription,
            EventType.UPDATED,
            {"billing_period_start": _iso(start), "billing_period_end": _iso(end)},
            external_event_id=external_event_id,
        )
        if commit:
            self._commit()
        return subscription

    def record_state_change(
        self, subscription, from_status, to_status, extra=None, external_event_id=None, commit=True
    ):
        """Generic ``updated`` audit entry; never touches status."""
        data = dict(extra or {})
        data.update(
            {
                "previous_status": S(from_status).value,
                "new_status": S(to_status).value,
            }
        )
        event = SubscriptionEvent.record(
            subscription, EventType.UPDATED, data, external_event_id=external_event_id
        )
        if commit:
            self._commit()
        return event

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _guard(self, subscription, target, operation):
        current = S(subscription.status or S.NONE)
        if target not in TRANSITIONS[current]:
            logger.info(
                "Rejected subscription transition",
                extra={
                    "subscription_id": subscription.id,
                    "from_status": current.value,
                    "to_status": target.value,
                    "operation": operation,
                },
            )
            raise InvalidTransition(current.value, target.value, operation)
        return current

    def _finish(self, subscription, previous, commit):
        subscription.updated_at = utcnow()
        subscription_transitions_total.labels(
            from_status=previous.value, to_status=subscription.status.value
        ).inc()
        logger.info(
            "Subscription transitioned",
            extra={
                "subscription_id": subscription.id,
                "tenant_id": subscription.tenant_id,
                "from_status": previous.value,
                "to_status": subscription.status.value,
            },
        )
        if commit:
            self._commit()
        return subscription

    @staticmethod
    def _commit():
        try:
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise
