from tenant_billing.extensions import db
from tenant_billing.utils import utcnow


class UsageCounter(db.Model):
    """
    Per-tenant resource counters maintained by the resource handlers.

    ``scope`` is empty for tenant-wide counters and holds the workspace id
    for per-workspace counters such as boards.
    """

    __tablename__ = "usage_counters"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    resource = db.Column(db.String(32), nullable=False)
    scope = db.Column(db.String(64), nullable=False, default="")
    value = db.Column(db.BigInteger, nullable=False, default=0)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "resource", "scope", name="uq_usage_counter"),
    )

    @classmethod
    def set_value(cls, tenant_id, resource, value, scope=""):
        counter = cls.query.filter_by(tenant_id=tenant_id, resource=resource, scope=scope).one_or_none()
        if counter is None:
            counter = cls(tenant_id=tenant_id, resource=resource, scope=scope)
            db.session.add(counter)
        counter.value = value
        return counter
