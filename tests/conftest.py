import hashlib
import hmac
import json
import time
from datetime import timedelta

import pytest
from faker import Faker

from tenant_billing import create_app
from tenant_billing.extensions import db
from tenant_billing.models import Plan, Subscription, SubscriptionStatus, Tenant
from tenant_billing.utils import utcnow

# Initialize Faker for generating test data
fake = Faker()


# Custom pytest marks for organizing tests
def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "db: mark test as database-intensive"
    )
    config.addinivalue_line(
        "markers",
        "payment: mark test as payment-provider related"
    )
    config.addinivalue_line(
        "markers",
        "webhook: mark test as webhook ingestion related"
    )


@pytest.fixture(scope="session")
def app():
    """Create application for testing"""
    app = create_app("testing")

    with app.app_context():
        db.create_all()

        yield app

        db.session.remove()
        db.drop_all()


@pytest.fixture(autouse=True)
def _clean_tables(app):
    """Every test starts from empty tables."""
    yield
    db.session.rollback()
    for table in reversed(db.metadata.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()
    db.session.remove()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def runner(app):
    return app.test_cli_runner()


@pytest.fixture
def make_tenant():
    def _make(**overrides):
        tenant = Tenant(
            name=overrides.pop("name", fake.company()),
            slug=overrides.pop("slug", f"{fake.slug()}-{fake.unique.random_int(1, 10 ** 6)}"),
            billing_email=overrides.pop("billing_email", fake.company_email()),
            **overrides,
        )
        db.session.add(tenant)
        db.session.commit()
        return tenant

    return _make


@pytest.fixture
def make_plan():
    def _make(**overrides):
        plan = Plan(
            slug=overrides.pop("slug", f"plan-{fake.unique.random_int(1, 10 ** 6)}"),
            name=overrides.pop("name", fake.word().capitalize()),
            external_price_id=overrides.pop("external_price_id", f"price_{fake.uuid4()[:14]}"),
            price=overrides.pop("price", 4900),
            trial_days=overrides.pop("trial_days", 14),
            limits=overrides.pop(
                "limits",
                {"max_users": 5, "max_workspaces": 2, "max_boards": 3, "max_storage_mb": 100},
            ),
            features=overrides.pop("features", ["export"]),
            **overrides,
        )
        db.session.add(plan)
        db.session.commit()
        return plan

    return _make


@pytest.fixture
def make_subscription(make_tenant, make_plan):
    """Insert a subscription row directly, bypassing the lifecycle operations."""

    def _make(status=SubscriptionStatus.ACTIVE, tenant=None, plan=None, **fields):
        tenant = tenant or make_tenant()
        plan = plan or make_plan()
        now = utcnow()
        fields.setdefault("billing_period_start", now - timedelta(days=5))
        fields.setdefault("billing_period_end", now + timedelta(days=25))
        subscription = Subscription(
            tenant_id=tenant.id,
            plan_id=plan.id,
            status=status,
            billing_metadata=fields.pop("billing_metadata", {}),
            **fields,
        )
        db.session.add(subscription)
        db.session.commit()
        return subscription

    return _make


@pytest.fixture
def canceled_subscription(make_subscription):
    """Canceled subscription whose grace window started ``days_ago`` days back."""

    def _make(days_ago, **fields):
        ends_at = utcnow() - timedelta(days=days_ago, minutes=5)
        return make_subscription(
            status=SubscriptionStatus.CANCELED,
            ends_at=ends_at,
            cancelled_at=ends_at,
            **fields,
        )

    return _make


def sign_stripe_payload(payload, secret, timestamp=None):
    """Build a ``Stripe-Signature`` header for ``payload``."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture
def stripe_signature():
    return sign_stripe_payload


@pytest.fixture
def stripe_event():
    """Canonical webhook event body."""

    def _make(event_type, obj, event_id=None):
        return {
            "id": event_id or f"evt_{fake.uuid4()[:20]}",
            "object": "event",
            "type": event_type,
            "data": {"object": obj},
        }

    return _make


@pytest.fixture
def post_webhook(client, app):
    """POST a signed Stripe webhook to the ingestion endpoint."""

    def _post(body, secret=None, signature=None, timestamp=None):
        payload = json.dumps(body)
        if signature is None:
            signature = sign_stripe_payload(
                payload, secret or app.config["STRIPE_WEBHOOK_SECRET"], timestamp
            )
        return client.post(
            "/webhooks/billing",
            data=payload,
            headers={"Stripe-Signature": signature, "Content-Type": "application/json"},
        )

    return _post
