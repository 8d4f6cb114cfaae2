import logging
from contextlib import contextmanager

import stripe

from tenant_billing.errors import MissingPrerequisite, ProviderError
from tenant_billing.providers.base import BillingProviderAdapter

logger = logging.getLogger(__name__)


def _as_dict(obj):
    if obj is None:
        return None
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


class StripeBillingProvider(BillingProviderAdapter):
    name = "stripe"
    signature_header = "Stripe-Signature"

    def __init__(self, secret_key, webhook_secret=None, api_version=None,
                 webhook_tolerance=300, app_url="http://localhost:5000"):
        self.webhook_secret = webhook_secret
        self.webhook_tolerance = webhook_tolerance
        self.app_url = app_url.rstrip("/")
        stripe.api_key = secret_key
        if api_version:
            stripe.api_version = api_version

    @classmethod
    def from_config(cls, config):
        return cls(
            secret_key=config.get("STRIPE_SECRET_KEY"),
            webhook_secret=config.get("STRIPE_WEBHOOK_SECRET"),
            api_version=config.get("STRIPE_API_VERSION"),
            webhook_tolerance=int(config.get("STRIPE_WEBHOOK_TOLERANCE", 300)),
            app_url=config.get("APP_URL", "http://localhost:5000"),
        )

    @contextmanager
    def _translate_errors(self, operation, **context):
        try:
            yield
        except stripe.StripeError as exc:
            message = getattr(exc, "user_message", None) or str(exc)
            logger.error(
                "Stripe request failed",
                extra={"operation": operation, "error": message, **context},
            )
            raise ProviderError(self.name, operation, message, original=exc) from exc

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    def create_customer(self, tenant, extra=None):
        params = {
            "email": tenant.billing_email,
            "name": tenant.name,
            "metadata": {"tenant_id": str(tenant.id)},
        }
        params.update(extra or {})
        with self._translate_errors("create_customer", tenant_id=tenant.id):
            customer = stripe.Customer.create(**params)
        logger.info("Stripe customer created", extra={"tenant_id": tenant.id})
        return _as_dict(customer)

    def get_customer(self, customer_id):
        with self._translate_errors("get_customer"):
            return _as_dict(stripe.Customer.retrieve(customer_id))

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def create_subscription(self, tenant, plan, payment_method_token):
        customer_id = self.ensure_customer(tenant)

        params = {
            "customer": customer_id,
            "items": [{"price": plan.external_price_id, "quantity": 1}],
            "payment_behavior": "default_incomplete",
            "expand": ["latest_invoice.payment_intent"],
            "metadata": {"tenant_id": str(tenant.id), "plan_id": str(plan.id)},
        }
        if plan.trial_days and plan.trial_days > 0:
            params["trial_period_days"] = plan.trial_days

        with self._translate_errors("create_subscription", tenant_id=tenant.id, plan=plan.slug):
            if payment_method_token:
                stripe.PaymentMethod.attach(payment_method_token, customer=customer_id)
                stripe.Customer.modify(
                    customer_id,
                    invoice_settings={"default_payment_method": payment_method_token},
                )
                params["default_payment_method"] = payment_method_token
            subscription = stripe.Subscription.create(**params)

        logger.info(
            "Stripe subscription created",
            extra={"tenant_id": tenant.id, "plan": plan.slug},
        )
        return _as_dict(subscription)

    def get_subscription(self, subscription_id):
        with self._translate_errors("get_subscription"):
            return _as_dict(stripe.Subscription.retrieve(subscription_id))

    def cancel_subscription(self, subscription, immediate=False):
        external_id = self._external_id(subscription)
        with self._translate_errors("cancel_subscription", subscription_id=subscription.id):
            if immediate:
                result = stripe.Subscription.cancel(external_id)
            else:
                result = stripe.Subscription.modify(external_id, cancel_at_period_end=True)
        return _as_dict(result)

    def resume_subscription(self, subscription):
        external_id = self._external_id(subscription)
        with self._translate_errors("resume_subscription", subscription_id=subscription.id):
            current = stripe.Subscription.retrieve(external_id)
            if current.get("pause_collection"):
                current = stripe.Subscription.modify(external_id, pause_collection="")
            elif current.get("cancel_at_period_end"):
                current = stripe.Subscription.modify(external_id, cancel_at_period_end=False)
        return _as_dict(current)

    def update_subscription(self, subscription, new_plan, options=None):
        options = options or {}
        external_id = self._external_id(subscription)
        with self._translate_errors("update_subscription", subscription_id=subscription.id):
            current = stripe.Subscription.retrieve(external_id)
            item_id = current["items"]["data"][0]["id"]
            result = stripe.Subscription.modify(
                external_id,
                items=[{"id": item_id, "price": new_plan.external_price_id}],
                proration_behavior=options.get("proration_behavior", "create_prorations"),
            )
        logger.info(
            "Stripe subscription plan swapped",
            extra={"subscription_id": subscription.id, "plan": new_plan.slug},
        )
        return _as_dict(result)

    # ------------------------------------------------------------------
    # Hosted flows
    # ------------------------------------------------------------------

    def create_checkout_session(self, tenant, plan, options=None):
        options = options or {}
        customer_id = self.ensure_customer(tenant)
        metadata = {"tenant_id": str(tenant.id), "plan_id": str(plan.id)}

        subscription_data = {"metadata": metadata}
        trial_days = options.get("trial_days", plan.trial_days)
        if trial_days:
            subscription_data["trial_period_days"] = trial_days

        with self._translate_errors("create_checkout_session", tenant_id=tenant.id):
            session = stripe.checkout.Session.create(
                mode="subscription",
                customer=customer_id,
                client_reference_id=str(tenant.id),
                line_items=[{"price": plan.external_price_id, "quantity": 1}],
                success_url=options.get(
                    "success_url",
                    f"{self.app_url}/billing/success?session_id={{CHECKOUT_SESSION_ID}}",
                ),
                cancel_url=options.get("cancel_url", f"{self.app_url}/billing/cancel"),
                metadata=metadata,
                subscription_data=subscription_data,
            )
        return {"id": session["id"], "url": session["url"]}

    def create_portal_session(self, customer_id, options=None):
        options = options or {}
        with self._translate_errors("create_portal_session"):
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=options.get("return_url", f"{self.app_url}/billing"),
            )
        return {"id": session["id"], "url": session["url"]}

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_webhook_signature(self, payload, signature):
        if not self.webhook_secret:
            logger.error("Stripe webhook secret is not configured")
            return False
        if not signature:
            return False
        try:
            stripe.Webhook.construct_event(
                payload, signature, self.webhook_secret, tolerance=self.webhook_tolerance
            )
        except stripe.SignatureVerificationError:
            logger.warning("Stripe webhook signature mismatch")
            return False
        except (ValueError, TypeError) as exc:
            logger.warning("Stripe webhook payload rejected", extra={"error": str(exc)})
            return False
        return True

    @staticmethod
    def _external_id(subscription):
        if not subscription.external_subscription_id:
            raise MissingPrerequisite("external_subscription_id")
        return subscription.external_subscription_id
