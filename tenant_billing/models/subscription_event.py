from sqlalchemy import event as orm_event

from tenant_billing.extensions import db
from tenant_billing.utils import utcnow


class EventType:
    CREATED = "created"
    TRIAL_STARTED = "trial_started"
    TRIAL_ENDED = "trial_ended"
    TRIAL_WILL_END = "trial_will_end"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PLAN_CHANGED = "plan_changed"
    CANCELED = "canceled"
    EXPIRED = "expired"
    UPDATED = "updated"
    GRACE_PERIOD_NOTIFICATION = "grace_period_notification"
    GRACE_PERIOD_EXTENDED = "grace_period_extended"


class ImmutableEventError(RuntimeError):
    pass


class SubscriptionEvent(db.Model):
    """Append-only lifecycle audit row."""

    __tablename__ = "subscription_events"

    id = db.Column(db.Integer, primary_key=True)
    subscription_id = db.Column(
        db.Integer, db.ForeignKey("subscriptions.id"), nullable=False, index=True
    )
    type = db.Column(db.String(64), nullable=False, index=True)
    data = db.Column(db.JSON, nullable=False, default=dict)
    external_event_id = db.Column(db.String(255), nullable=True, index=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    subscription = db.relationship("Subscription", back_populates="events")

    @classmethod
    def record(cls, subscription, event_type, data=None, external_event_id=None):
        event = cls(
            subscription=subscription,
            type=event_type,
            data=data or {},
            external_event_id=external_event_id,
            created_at=utcnow(),
        )
        db.session.add(event)
        return event

    def __repr__(self):
        return f"<SubscriptionEvent {self.type} sub={self.subscription_id}>"


@orm_event.listens_for(SubscriptionEvent, "before_update")
def _reject_event_update(mapper, connection, target):
    raise ImmutableEventError(f"Subscription event {target.id} is immutable")
