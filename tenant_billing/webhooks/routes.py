import json
import logging

from flask import Blueprint, current_app, jsonify, request
from kombu.exceptions import OperationalError

from tenant_billing.errors import ValidationError
from tenant_billing.metrics import webhook_events_total
from tenant_billing.providers import get_provider
from tenant_billing.webhooks.ledger import WebhookLedger
from tenant_billing.webhooks.processor import WebhookProcessor

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/webhooks")


@webhooks_bp.route("/billing", methods=["POST"])
def billing_webhook():
    """
    Accept a provider webhook and queue it for processing.

    Only verification and parsing happen here; state changes are applied
    by the worker so the provider gets a fast acknowledgement.
    """
    provider = get_provider()
    payload = request.get_data()
    signature = request.headers.get(provider.signature_header)

    if not provider.verify_webhook_signature(payload, signature):
        logger.warning("Webhook signature rejected", extra={"provider": provider.name})
        webhook_events_total.labels(provider=provider.name, outcome="rejected").inc()
        return jsonify({"error": "Invalid signature"}), 401

    try:
        event = provider.normalize_event(json.loads(payload))
    except (ValueError, ValidationError) as exc:
        logger.warning("Webhook payload rejected", extra={"provider": provider.name, "error": str(exc)})
        return jsonify({"error": "Invalid payload"}), 400

    log_context = {"provider": provider.name, "event_id": event["id"], "event_type": event["type"]}

    if WebhookLedger.is_processed(provider.name, event["id"]):
        logger.info("Webhook event already processed", extra=log_context)
        return jsonify({"status": "Event already processed"}), 200

    if not WebhookProcessor.handles(event["type"]):
        logger.info("Webhook event ignored", extra=log_context)
        webhook_events_total.labels(provider=provider.name, outcome="ignored").inc()
        return jsonify({"status": "Event ignored"}), 200

    # Imported here to avoid a cycle: tasks import the processor.
    from tenant_billing.workers.tasks import process_webhook_event

    try:
        process_webhook_event.apply_async(
            args=[provider.name, event],
            queue=current_app.config.get("WEBHOOK_QUEUE", "billing_webhooks"),
        )
    except OperationalError as exc:
        logger.error("Could not enqueue webhook event", extra={**log_context, "error": str(exc)})
        return jsonify({"error": "Queue unavailable"}), 503

    logger.info("Webhook event queued", extra=log_context)
    return jsonify({"status": "Event queued"}), 202
