"""
Flask application factory for the tenant billing core.
"""

import logging

import sentry_sdk
from flask import Flask
from sentry_sdk.integrations.flask import FlaskIntegration

from tenant_billing.config import get_config
from tenant_billing.extensions import init_extensions
from tenant_billing.logging_config import setup_logging

logger = logging.getLogger(__name__)


def setup_sentry(app):
    """Initialize Sentry error tracking when a DSN is configured."""
    sentry_dsn = app.config.get("SENTRY_DSN")
    if not sentry_dsn or app.testing:
        return

    sentry_sdk.init(
        dsn=sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.1,
        environment=app.config.get("ENVIRONMENT"),
        release=app.config.get("APP_VERSION", "1.0.0"),
        send_default_pii=False,
    )
    logger.info("Sentry error tracking initialized")


def create_app(config_name=None):
    app = Flask(__name__)
    app.config.from_object(get_config(config_name))

    setup_logging(app)
    setup_sentry(app)
    init_extensions(app)

    # Register models with SQLAlchemy metadata
    from tenant_billing import models  # noqa: F401
    from tenant_billing.providers import build_provider
    from tenant_billing.workers.celery_app import init_celery

    init_celery(app)
    app.extensions["billing_provider"] = build_provider(app.config)

    from tenant_billing.commands import register_commands
    from tenant_billing.error_handlers import register_error_handlers
    from tenant_billing.health import health_bp
    from tenant_billing.metrics import register_metrics
    from tenant_billing.webhooks import webhooks_bp

    register_error_handlers(app)
    app.register_blueprint(health_bp)
    app.register_blueprint(webhooks_bp)
    register_metrics(app)
    register_commands(app)

    logger.info(
        "Application created",
        extra={
            "environment": app.config.get("ENVIRONMENT"),
            "provider": app.extensions["billing_provider"].name,
        },
    )
    return app
