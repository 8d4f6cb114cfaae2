"""
Prometheus metrics for the billing core.
"""

from flask import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

webhook_events_total = Counter(
    "billing_webhook_events_total",
    "Billing webhook events by provider and outcome",
    ["provider", "outcome"],
)

webhook_processing_seconds = Histogram(
    "billing_webhook_processing_seconds",
    "Time spent applying a webhook event in the worker",
    ["provider"],
)

subscription_transitions_total = Counter(
    "billing_subscription_transitions_total",
    "Subscription status transitions",
    ["from_status", "to_status"],
)

grace_notifications_total = Counter(
    "billing_grace_notifications_total",
    "Grace period notification attempts",
    ["result"],
)

task_executions_total = Counter(
    "billing_task_executions_total",
    "Celery task executions",
    ["task_name", "status"],
)


def register_metrics(app):
    if not app.config.get("METRICS_ENABLED", True):
        return

    @app.route("/metrics")
    def metrics():
        return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)
