from tenant_billing.extensions import db
from tenant_billing.utils import utcnow


class ProcessedWebhookEvent(db.Model):
    __tablename__ = "processed_webhook_events"

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(32), nullable=False)
    external_event_id = db.Column(db.String(255), nullable=False)
    event_type = db.Column(db.String(128), nullable=False)
    received_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        db.UniqueConstraint("provider", "external_event_id", name="uq_webhook_provider_event"),
    )


class FailedWebhookEvent(db.Model):
    """Events that exhausted retries or failed terminally, kept for manual replay."""

    __tablename__ = "failed_webhook_events"

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(32), nullable=False)
    external_event_id = db.Column(db.String(255), nullable=True, index=True)
    event_type = db.Column(db.String(128), nullable=True)
    payload = db.Column(db.JSON, nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    failed_at = db.Column(db.DateTime, default=utcnow, nullable=False)
