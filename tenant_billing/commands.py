import os

import click
from flask import current_app

from tenant_billing.billing.grace_period import GracePeriodService
from tenant_billing.extensions import db
from tenant_billing.models import Plan
from tenant_billing.models.plan import UNLIMITED

DEFAULT_PLANS = [
    {
        "slug": "free",
        "name": "Free",
        "price": 0,
        "trial_days": 0,
        "limits": {"max_users": 3, "max_workspaces": 1, "max_boards": 3, "max_storage_mb": 100},
        "features": [],
    },
    {
        "slug": "starter",
        "name": "Starter",
        "price": 1900,
        "trial_days": 14,
        "limits": {"max_users": 10, "max_workspaces": 3, "max_boards": 20, "max_storage_mb": 5120},
        "features": ["export"],
    },
    {
        "slug": "pro",
        "name": "Pro",
        "price": 4900,
        "trial_days": 14,
        "limits": {"max_users": 50, "max_workspaces": 10, "max_boards": UNLIMITED, "max_storage_mb": 51200},
        "features": ["export", "api_access", "priority_support"],
    },
    {
        "slug": "enterprise",
        "name": "Enterprise",
        "price": 19900,
        "trial_days": 30,
        "limits": {
            "max_users": UNLIMITED,
            "max_workspaces": UNLIMITED,
            "max_boards": UNLIMITED,
            "max_storage_mb": UNLIMITED,
        },
        "features": ["export", "api_access", "priority_support", "sso", "audit_log"],
    },
]


def register_commands(app):
    """Attach the billing CLI commands to ``app``."""

    @app.cli.command("init-db")
    def init_db():
        """Create all tables."""
        db.create_all()
        click.echo("Database initialized.")

    @app.cli.command("seed-plans")
    def seed_plans():
        """Create or update the default plans. Price ids come from PLAN_PRICE_ID_<SLUG>."""
        currency = current_app.config.get("BILLING_CURRENCY", "USD")
        created = updated = 0
        for definition in DEFAULT_PLANS:
            plan = Plan.query.filter_by(slug=definition["slug"]).one_or_none()
            if plan is None:
                plan = Plan(slug=definition["slug"])
                db.session.add(plan)
                created += 1
            else:
                updated += 1
            plan.name = definition["name"]
            plan.price = definition["price"]
            plan.currency = currency
            plan.trial_days = definition["trial_days"]
            plan.limits = dict(definition["limits"])
            plan.features = list(definition["features"])
            plan.is_active = True
            price_id = os.getenv(f"PLAN_PRICE_ID_{definition['slug'].upper()}")
            if price_id:
                plan.external_price_id = price_id
        db.session.commit()
        click.echo(f"Plans seeded: {created} created, {updated} updated.")

    @app.cli.command("check-grace-periods")
    @click.option("--notifications", "only_notifications", is_flag=True,
                  help="Only send grace period notifications.")
    @click.option("--expirations", "only_expirations", is_flag=True,
                  help="Only expire subscriptions whose grace period ended.")
    @click.option("--dry-run", is_flag=True, help="Report what would happen without changing anything.")
    def check_grace_periods(only_notifications, only_expirations, dry_run):
        """Send grace period notices and expire lapsed subscriptions."""
        run_all = not only_notifications and not only_expirations
        service = GracePeriodService.from_config(current_app.config)
        result = service.run_sweep(
            notifications=run_all or only_notifications,
            expirations=run_all or only_expirations,
            dry_run=dry_run,
        )

        prefix = "[dry run] " if dry_run else ""
        click.echo(f"{prefix}Notifications due: {result.notifications_due}, sent: {result.notifications_sent}")
        click.echo(f"{prefix}Expirations due: {result.expirations_due}, expired: {result.expired}")
        if result.errors:
            click.echo(f"Errors: {result.errors}", err=True)
