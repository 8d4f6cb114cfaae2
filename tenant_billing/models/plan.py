from tenant_billing.extensions import db
from tenant_billing.utils import utcnow

UNLIMITED = -1

LIMIT_KEYS = ("max_users", "max_workspaces", "max_boards", "max_storage_mb")


class Plan(db.Model):
    __tablename__ = "plans"

    id = db.Column(db.Integer, primary_key=True)
    slug = db.Column(db.String(64), unique=True, nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    external_price_id = db.Column(db.String(255), nullable=True)

    # Minor units (cents)
    price = db.Column(db.Integer, nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False, default="USD")
    billing_interval = db.Column(db.String(10), nullable=False, default="month")
    trial_days = db.Column(db.Integer, nullable=False, default=0)

    limits = db.Column(db.JSON, nullable=False, default=dict)
    features = db.Column(db.JSON, nullable=False, default=list)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def limit(self, key):
        """Configured limit for ``key``; missing keys mean zero."""
        return int((self.limits or {}).get(key, 0))

    def is_unlimited(self, key):
        return self.limit(key) == UNLIMITED

    def has_feature(self, name):
        return name in (self.features or [])

    def __repr__(self):
        return f"<Plan {self.slug}>"
