"""
Celery entrypoint.

    celery -A tenant_billing.workers.worker worker -Q billing,billing_webhooks
    celery -A tenant_billing.workers.worker beat
"""
import os

from tenant_billing import create_app
from tenant_billing.logging_config import configure_logging_for_worker
from tenant_billing.workers.celery_app import celery

flask_app = create_app(os.getenv("FLASK_CONFIG"))
configure_logging_for_worker(
    flask_app.config.get("LOG_LEVEL", "INFO"),
    flask_app.config.get("LOG_JSON", True),
)

__all__ = ["celery", "flask_app"]
