from tenant_billing.notifications.notification_service import NotificationService

__all__ = ["NotificationService"]
