from tenant_billing.webhooks.routes import webhooks_bp

__all__ = ["webhooks_bp"]
