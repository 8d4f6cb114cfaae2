from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional, Set

from sqlalchemy import text

from tenant_billing.extensions import db
from tenant_billing.utils import utcnow

EXTENSIONS_KEY = "grace_period_extensions"
NOTIFICATIONS_KEY = "grace_period_notifications_sent"


class SubscriptionStatus(str, Enum):
    NONE = "none"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"


@dataclass(frozen=True)
class GracePeriodExtension:
    days: int
    reason: Optional[str]
    at: datetime

    def to_dict(self):
        return {"days": self.days, "reason": self.reason, "at": self.at.isoformat()}

    @classmethod
    def from_dict(cls, data):
        return cls(
            days=int(data["days"]),
            reason=data.get("reason"),
            at=datetime.fromisoformat(data["at"]),
        )


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    plan_id = db.Column(db.Integer, db.ForeignKey("plans.id"), nullable=False, index=True)

    status = db.Column(
        db.Enum(
            SubscriptionStatus,
            native_enum=False,
            length=20,
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=SubscriptionStatus.NONE,
        index=True,
    )

    billing_period_start = db.Column(db.DateTime, nullable=True)
    billing_period_end = db.Column(db.DateTime, nullable=True)
    trial_ends_at = db.Column(db.DateTime, nullable=True)
    ends_at = db.Column(db.DateTime, nullable=True, index=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    provider = db.Column(db.String(32), nullable=True)
    external_customer_id = db.Column(db.String(255), nullable=True, index=True)
    external_subscription_id = db.Column(db.String(255), unique=True, nullable=True)

    # "metadata" is reserved on declarative models
    billing_metadata = db.Column("metadata", db.JSON, nullable=False, default=dict)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    tenant = db.relationship("Tenant", back_populates="subscriptions")
    plan = db.relationship("Plan")
    events = db.relationship(
        "SubscriptionEvent",
        back_populates="subscription",
        order_by="SubscriptionEvent.id",
        lazy="dynamic",
    )

    __table_args__ = (
        # One open subscription per tenant; expired rows are history.
        db.Index(
            "uq_subscriptions_open_tenant",
            "tenant_id",
            unique=True,
            sqlite_where=text("status != 'expired'"),
            postgresql_where=text("status != 'expired'"),
        ),
    )

    @property
    def is_terminal(self):
        return self.status == SubscriptionStatus.EXPIRED

    @property
    def grace_period_extensions(self) -> List[GracePeriodExtension]:
        raw = (self.billing_metadata or {}).get(EXTENSIONS_KEY, [])
        return [GracePeriodExtension.from_dict(item) for item in raw]

    @property
    def extension_days(self) -> int:
        return sum(extension.days for extension in self.grace_period_extensions)

    @property
    def notified_days(self) -> Set[int]:
        return {int(day) for day in (self.billing_metadata or {}).get(NOTIFICATIONS_KEY, [])}

    def add_grace_period_extension(self, extension: GracePeriodExtension):
        extensions = [item.to_dict() for item in self.grace_period_extensions]
        extensions.append(extension.to_dict())
        self._set_metadata(EXTENSIONS_KEY, extensions)

    def mark_day_notified(self, day: int):
        self._set_metadata(NOTIFICATIONS_KEY, sorted(self.notified_days | {int(day)}))

    def grace_period_end(self, grace_days: int, include_extensions=True):
        if self.ends_at is None:
            return None
        days = grace_days + (self.extension_days if include_extensions else 0)
        return self.ends_at + timedelta(days=days)

    def _set_metadata(self, key, value):
        # Reassign a copy so the JSON column is flagged dirty.
        metadata = dict(self.billing_metadata or {})
        metadata[key] = value
        self.billing_metadata = metadata

    def __repr__(self):
        return f"<Subscription {self.id} tenant={self.tenant_id} status={self.status}>"
