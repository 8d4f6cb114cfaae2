import hashlib
import hmac
import logging
from datetime import datetime

import requests

from tenant_billing.errors import MissingPrerequisite, ProviderError, ValidationError
from tenant_billing.providers.base import BillingProviderAdapter

logger = logging.getLogger(__name__)

# Paystack event name -> canonical event type
EVENT_TYPE_MAP = {
    "subscription.create": "customer.subscription.created",
    "subscription.not_renew": "customer.subscription.updated",
    "subscription.disable": "customer.subscription.deleted",
    "invoice.payment_failed": "invoice.payment_failed",
    "invoice.update": "invoice.payment_succeeded",
}

# Paystack subscription status -> canonical status
STATUS_MAP = {
    "active": "active",
    "non-renewing": "active",
    "attention": "past_due",
    "completed": "canceled",
    "cancelled": "canceled",
}


def _unix(value):
    """Paystack sends ISO-8601 strings; canonical events carry unix seconds."""
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return int(parsed.timestamp())


class PaystackBillingProvider(BillingProviderAdapter):
    name = "paystack"
    signature_header = "x-paystack-signature"

    def __init__(self, secret_key, base_url="https://api.paystack.co", timeout=15,
                 app_url="http://localhost:5000"):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.app_url = app_url.rstrip("/")

    @classmethod
    def from_config(cls, config):
        return cls(
            secret_key=config.get("PAYSTACK_SECRET_KEY"),
            base_url=config.get("PAYSTACK_BASE_URL", "https://api.paystack.co"),
            timeout=int(config.get("PAYSTACK_TIMEOUT", 15)),
            app_url=config.get("APP_URL", "http://localhost:5000"),
        )

    def _request(self, method, path, operation, **kwargs):
        try:
            response = requests.request(
                method,
                f"{self.base_url}{path}",
                headers={
                    "Authorization": f"Bearer {self.secret_key}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
                **kwargs,
            )
            body = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.error("Paystack request failed", extra={"operation": operation, "error": str(exc)})
            raise ProviderError(self.name, operation, str(exc), original=exc) from exc

        if response.status_code >= 400 or not body.get("status"):
            message = body.get("message") or f"HTTP {response.status_code}"
            logger.error(
                "Paystack rejected request",
                extra={"operation": operation, "status_code": response.status_code, "error": message},
            )
            raise ProviderError(self.name, operation, message)
        return body.get("data") or {}

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    def create_customer(self, tenant, extra=None):
        payload = {
            "email": tenant.billing_email,
            "first_name": tenant.name,
            "metadata": {"tenant_id": str(tenant.id)},
        }
        payload.update(extra or {})
        data = self._request("POST", "/customer", "create_customer", json=payload)
        logger.info("Paystack customer created", extra={"tenant_id": tenant.id})
        return {"id": data["customer_code"], **data}

    def get_customer(self, customer_id):
        data = self._request("GET", f"/customer/{customer_id}", "get_customer")
        return {"id": data.get("customer_code", customer_id), **data}

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def create_subscription(self, tenant, plan, payment_method_token):
        customer_code = self.ensure_customer(tenant)
        payload = {"customer": customer_code, "plan": plan.external_price_id}
        if payment_method_token:
            payload["authorization"] = payment_method_token
        data = self._request("POST", "/subscription", "create_subscription", json=payload)
        return {"id": data["subscription_code"], **data}

    def get_subscription(self, subscription_id):
        data = self._request("GET", f"/subscription/{subscription_id}", "get_subscription")
        return {"id": data.get("subscription_code", subscription_id), **data}

    def cancel_subscription(self, subscription, immediate=False):
        # Paystack only stops renewal; access runs to the end of the paid period.
        code = self._external_id(subscription)
        current = self.get_subscription(code)
        self._request(
            "POST",
            "/subscription/disable",
            "cancel_subscription",
            json={"code": code, "token": current.get("email_token")},
        )
        return {**current, "status": "non-renewing", "immediate": immediate}

    def resume_subscription(self, subscription):
        code = self._external_id(subscription)
        current = self.get_subscription(code)
        if current.get("status") != "non-renewing":
            return current
        self._request(
            "POST",
            "/subscription/enable",
            "resume_subscription",
            json={"code": code, "token": current.get("email_token")},
        )
        return {**current, "status": "active"}

    def update_subscription(self, subscription, new_plan, options=None):
        raise ProviderError(
            self.name,
            "update_subscription",
            "Paystack does not support swapping plans on a subscription; cancel and resubscribe",
        )

    # ------------------------------------------------------------------
    # Hosted flows
    # ------------------------------------------------------------------

    def create_checkout_session(self, tenant, plan, options=None):
        options = options or {}
        self.ensure_customer(tenant)
        data = self._request(
            "POST",
            "/transaction/initialize",
            "create_checkout_session",
            json={
                "email": tenant.billing_email,
                "amount": plan.price,
                "plan": plan.external_price_id,
                "callback_url": options.get("success_url", f"{self.app_url}/billing/success"),
                "metadata": {
                    "tenant_id": str(tenant.id),
                    "plan_id": str(plan.id),
                    "cancel_action": options.get("cancel_url", f"{self.app_url}/billing/cancel"),
                },
            },
        )
        return {"id": data["reference"], "url": data["authorization_url"]}

    def create_portal_session(self, customer_id, options=None):
        options = options or {}
        code = options.get("subscription_code")
        if not code:
            customer = self.get_customer(customer_id)
            active = [
                item for item in customer.get("subscriptions") or []
                if item.get("status") in ("active", "non-renewing", "attention")
            ]
            if not active:
                raise MissingPrerequisite("subscription_code", "Customer has no active Paystack subscription")
            code = active[0]["subscription_code"]
        data = self._request("GET", f"/subscription/{code}/manage/link", "create_portal_session")
        return {"id": code, "url": data["link"]}

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_webhook_signature(self, payload, signature):
        if not self.secret_key:
            logger.error("Paystack secret key is not configured")
            return False
        if not signature:
            return False
        if isinstance(payload, str):
            payload = payload.encode()
        computed = hmac.new(self.secret_key.encode(), payload, hashlib.sha512).hexdigest()
        # Header values may carry non-ASCII bytes; compare as bytes so they just mismatch.
        return hmac.compare_digest(computed.encode(), signature.encode("utf-8", "ignore"))

    def normalize_event(self, payload):
        if not isinstance(payload, dict):
            raise ValidationError("Webhook payload must be a JSON object")
        event = payload.get("event")
        data = payload.get("data")
        if not event or not isinstance(data, dict):
            raise ValidationError("Webhook payload requires 'event' and 'data'")

        reference = (
            data.get("id")
            or data.get("subscription_code")
            or data.get("invoice_code")
            or data.get("reference")
        )
        if not reference:
            raise ValidationError("Webhook payload has no identifier")

        if event == "charge.success":
            metadata = data.get("metadata") or {}
            event_type = "checkout.session.completed" if metadata.get("tenant_id") else "invoice.payment_succeeded"
        else:
            event_type = EVENT_TYPE_MAP.get(event, event)

        return {
            "id": f"{event}:{reference}",
            "type": event_type,
            "data": {"object": self._canonical_object(event_type, data)},
        }

    def _canonical_object(self, event_type, data):
        customer = data.get("customer") or {}
        customer_code = customer.get("customer_code") if isinstance(customer, dict) else customer
        subscription = data.get("subscription") or {}
        subscription_code = (
            subscription.get("subscription_code") if isinstance(subscription, dict) else subscription
        ) or data.get("subscription_code")
        plan = data.get("plan") or {}
        plan_code = plan.get("plan_code") if isinstance(plan, dict) else plan

        if event_type.startswith("customer.subscription."):
            return {
                "id": data.get("subscription_code"),
                "customer": customer_code,
                "status": STATUS_MAP.get(data.get("status"), data.get("status")),
                "cancel_at_period_end": data.get("status") == "non-renewing",
                "items": {"data": [{"price": {"id": plan_code}}]} if plan_code else {"data": []},
                "current_period_end": _unix(data.get("next_payment_date")),
                "metadata": {},
            }
        if event_type == "checkout.session.completed":
            return {
                "id": data.get("reference"),
                "customer": customer_code,
                "subscription": subscription_code,
                "metadata": data.get("metadata") or {},
            }
        return {
            "id": data.get("invoice_code") or data.get("reference") or data.get("id"),
            "customer": customer_code,
            "subscription": subscription_code,
            "period_start": _unix(data.get("period_start")),
            "period_end": _unix(data.get("period_end")),
        }

    @staticmethod
    def _external_id(subscription):
        if not subscription.external_subscription_id:
            raise MissingPrerequisite("external_subscription_id")
        return subscription.external_subscription_id
