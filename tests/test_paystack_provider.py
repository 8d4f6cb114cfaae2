import hashlib
import hmac
import json
from unittest.mock import Mock, patch

import pytest
import requests

from tenant_billing.errors import MissingPrerequisite, ProviderError, ValidationError
from tenant_billing.providers import PaystackBillingProvider

pytestmark = pytest.mark.payment

SECRET = "sk_test_paystack"


@pytest.fixture
def provider():
    return PaystackBillingProvider(secret_key=SECRET, app_url="https://billing.example.com")


def paystack_response(data=None, status=True, status_code=200, message="ok"):
    response = Mock(status_code=status_code)
    response.json.return_value = {"status": status, "message": message, "data": data or {}}
    return response


def sign(payload):
    return hmac.new(SECRET.encode(), payload.encode(), hashlib.sha512).hexdigest()


def test_verify_webhook_signature(provider):
    payload = json.dumps({"event": "charge.success", "data": {"reference": "ref_1"}})

    assert provider.verify_webhook_signature(payload, sign(payload)) is True
    assert provider.verify_webhook_signature(payload.encode(), sign(payload)) is True
    assert provider.verify_webhook_signature(payload + " ", sign(payload)) is False
    assert provider.verify_webhook_signature(payload, None) is False
    assert provider.verify_webhook_signature(payload, "é" * 128) is False


def test_verify_without_secret_fails_closed():
    provider = PaystackBillingProvider(secret_key=None)

    assert provider.verify_webhook_signature("{}", "anything") is False


def test_charge_success_with_tenant_is_checkout(provider):
    event = provider.normalize_event(
        {
            "event": "charge.success",
            "data": {
                "reference": "ref_42",
                "customer": {"customer_code": "CUS_1"},
                "metadata": {"tenant_id": "7", "plan_id": "3"},
            },
        }
    )

    assert event["id"] == "charge.success:ref_42"
    assert event["type"] == "checkout.session.completed"
    assert event["data"]["object"]["customer"] == "CUS_1"
    assert event["data"]["object"]["metadata"] == {"tenant_id": "7", "plan_id": "3"}


def test_charge_success_without_tenant_is_payment(provider):
    event = provider.normalize_event(
        {"event": "charge.success", "data": {"reference": "ref_43", "subscription": {"subscription_code": "SUB_1"}}}
    )

    assert event["type"] == "invoice.payment_succeeded"
    assert event["data"]["object"]["subscription"] == "SUB_1"


def test_subscription_disable_maps_to_deleted(provider):
    event = provider.normalize_event(
        {
            "event": "subscription.disable",
            "data": {
                "subscription_code": "SUB_9",
                "status": "cancelled",
                "plan": {"plan_code": "PLN_pro"},
                "customer": {"customer_code": "CUS_9"},
            },
        }
    )

    obj = event["data"]["object"]
    assert event["type"] == "customer.subscription.deleted"
    assert obj["id"] == "SUB_9"
    assert obj["status"] == "canceled"
    assert obj["items"]["data"][0]["price"]["id"] == "PLN_pro"


def test_normalize_rejects_payload_without_identifier(provider):
    with pytest.raises(ValidationError):
        provider.normalize_event({"event": "charge.success", "data": {}})
    with pytest.raises(ValidationError):
        provider.normalize_event({"data": {"reference": "x"}})


@pytest.mark.db
def test_checkout_initializes_transaction(provider, make_tenant, make_plan):
    tenant = make_tenant(external_customer_id="CUS_1")
    plan = make_plan(external_price_id="PLN_starter", price=500000)

    with patch("requests.request", return_value=paystack_response(
        {"reference": "ref_1", "authorization_url": "https://checkout.paystack.com/ref_1"}
    )) as request:
        session = provider.create_checkout_session(tenant, plan)

    assert session == {"id": "ref_1", "url": "https://checkout.paystack.com/ref_1"}
    method, url = request.call_args.args
    assert method == "POST"
    assert url == "https://api.paystack.co/transaction/initialize"
    body = request.call_args.kwargs["json"]
    assert body["plan"] == "PLN_starter"
    assert body["metadata"]["tenant_id"] == str(tenant.id)
    assert request.call_args.kwargs["headers"]["Authorization"] == f"Bearer {SECRET}"


@pytest.mark.db
def test_customer_is_created_once(provider, make_tenant):
    tenant = make_tenant()

    with patch("requests.request", return_value=paystack_response({"customer_code": "CUS_new"})) as request:
        assert provider.ensure_customer(tenant) == "CUS_new"
        assert provider.ensure_customer(tenant) == "CUS_new"

    assert request.call_count == 1
    assert tenant.external_customer_id == "CUS_new"


def test_rejected_request_raises_provider_error(provider):
    with patch("requests.request", return_value=paystack_response(status=False, status_code=400,
                                                                 message="Invalid key")):
        with pytest.raises(ProviderError) as exc_info:
            provider.get_customer("CUS_1")

    assert exc_info.value.provider == "paystack"
    assert "Invalid key" in str(exc_info.value)


def test_network_failure_raises_provider_error(provider):
    with patch("requests.request", side_effect=requests.ConnectionError("refused")):
        with pytest.raises(ProviderError):
            provider.get_subscription("SUB_1")


@pytest.mark.db
def test_cancel_disables_subscription(provider, make_subscription):
    subscription = make_subscription(external_subscription_id="SUB_1")
    responses = [
        paystack_response({"subscription_code": "SUB_1", "email_token": "tok_1", "status": "active"}),
        paystack_response({}),
    ]

    with patch("requests.request", side_effect=responses) as request:
        result = provider.cancel_subscription(subscription)

    assert result["status"] == "non-renewing"
    method, url = request.call_args.args
    assert url.endswith("/subscription/disable")
    assert request.call_args.kwargs["json"] == {"code": "SUB_1", "token": "tok_1"}


@pytest.mark.db
def test_resume_only_enables_non_renewing(provider, make_subscription):
    subscription = make_subscription(external_subscription_id="SUB_2")

    with patch("requests.request", return_value=paystack_response(
        {"subscription_code": "SUB_2", "status": "active"}
    )) as request:
        provider.resume_subscription(subscription)

    assert request.call_count == 1


@pytest.mark.db
def test_plan_swap_is_not_supported(provider, make_subscription, make_plan):
    with pytest.raises(ProviderError):
        provider.update_subscription(make_subscription(external_subscription_id="SUB_3"), make_plan())


def test_portal_requires_an_active_subscription(provider):
    with patch("requests.request", return_value=paystack_response(
        {"customer_code": "CUS_1", "subscriptions": [{"subscription_code": "SUB_old", "status": "cancelled"}]}
    )):
        with pytest.raises(MissingPrerequisite):
            provider.create_portal_session("CUS_1")


def test_portal_returns_manage_link(provider):
    responses = [
        paystack_response({"customer_code": "CUS_1",
                           "subscriptions": [{"subscription_code": "SUB_1", "status": "active"}]}),
        paystack_response({"link": "https://paystack.com/manage/SUB_1"}),
    ]

    with patch("requests.request", side_effect=responses):
        session = provider.create_portal_session("CUS_1")

    assert session == {"id": "SUB_1", "url": "https://paystack.com/manage/SUB_1"}


@pytest.mark.webhook
def test_endpoint_rejects_non_ascii_signature(app, client, provider, monkeypatch):
    monkeypatch.setitem(app.extensions, "billing_provider", provider)

    response = client.post(
        "/webhooks/billing",
        data=b'{"event": "charge.success", "data": {"reference": "ref_1"}}',
        headers={"x-paystack-signature": "\xe9" * 4},
        content_type="application/json",
    )

    assert response.status_code == 401
