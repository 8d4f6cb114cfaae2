import logging
from contextlib import nullcontext

from celery import Celery, Task
from celery.schedules import crontab
from flask import has_app_context
from kombu import Queue

from tenant_billing.metrics import task_executions_total

logger = logging.getLogger(__name__)

celery = Celery("tenant_billing", include=["tenant_billing.workers.tasks"])

celery.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=300,
    task_soft_time_limit=240,
)

CELERY_BEAT_SCHEDULE = {
    "grace-period-sweep-hourly": {
        "task": "tenant_billing.grace_period_sweep",
        "schedule": crontab(minute=0),
    },
}


class BillingTask(Task):
    """
    Runs inside a Flask app context and records execution metrics.

    The worker entrypoint binds the Flask app via ``init_celery``; eager
    execution inside a request or test reuses the active context.
    """

    abstract = True

    def __call__(self, *args, **kwargs):
        with self._app_context():
            try:
                result = super().__call__(*args, **kwargs)
            except Exception:
                task_executions_total.labels(task_name=self.name, status="failure").inc()
                raise
            task_executions_total.labels(task_name=self.name, status="success").inc()
            return result

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        logger.error(
            "Task failed",
            extra={
                "task": self.name,
                "task_id": task_id,
                "error": str(exc),
            },
        )

    def _app_context(self):
        if has_app_context():
            return nullcontext()
        return self.app.flask_app.app_context()


def init_celery(app):
    """Bind the Celery instance to ``app`` and load its settings."""
    config = app.config
    queue = config.get("WEBHOOK_QUEUE", "billing_webhooks")

    celery.conf.update(
        broker_url=config.get("CELERY_BROKER_URL"),
        result_backend=config.get("CELERY_RESULT_BACKEND"),
        task_always_eager=config.get("CELERY_TASK_ALWAYS_EAGER", False),
        task_eager_propagates=False,
        task_default_queue="billing",
        task_queues=(Queue("billing"), Queue(queue)),
        task_routes={"tenant_billing.process_webhook_event": {"queue": queue}},
        beat_schedule=CELERY_BEAT_SCHEDULE,
    )
    celery.flask_app = app
    app.extensions["celery"] = celery
    return celery
