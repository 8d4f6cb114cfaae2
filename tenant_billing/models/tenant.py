from tenant_billing.extensions import db
from tenant_billing.utils import utcnow


class Tenant(db.Model):
    """
    Billing unit. Owned by tenant management; the billing core only reads it
    and records the provider customer id.
    """

    __tablename__ = "tenants"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    slug = db.Column(db.String(120), unique=True, nullable=False, index=True)
    billing_email = db.Column(db.String(255), nullable=True)
    external_customer_id = db.Column(db.String(255), nullable=True, index=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    subscriptions = db.relationship(
        "Subscription",
        back_populates="tenant",
        order_by="Subscription.id",
        lazy="select",
    )

    def __repr__(self):
        return f"<Tenant {self.slug}>"
