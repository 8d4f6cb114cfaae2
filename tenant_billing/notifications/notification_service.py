import logging
import smtplib

from flask import current_app
from flask_mail import Message

from tenant_billing.extensions import mail
from tenant_billing.notifications.email_templates import EmailTemplates

logger = logging.getLogger(__name__)


class NotificationService:
    """Billing emails to tenant billing contacts."""

    @staticmethod
    def send_email(to_email, subject, html_content, sender=None):
        """Send synchronously. Returns False when the mail server rejects it."""
        message = Message(
            subject=subject,
            recipients=[to_email],
            html=html_content,
            sender=sender or current_app.config.get("MAIL_DEFAULT_SENDER"),
        )
        try:
            mail.send(message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error(
                "Failed to send email",
                extra={"to": to_email, "subject": subject, "error": str(exc)},
            )
            return False

        logger.info("Email sent", extra={"to": to_email, "subject": subject})
        return True

    @classmethod
    def notify_grace_period(cls, tenant, day_number, grace_period_end, days_remaining):
        subject, html = EmailTemplates.grace_period_notice(
            tenant,
            day_number,
            grace_period_end,
            days_remaining,
            billing_url=cls._billing_url(),
            app_name=current_app.config.get("APP_NAME", "Tenant Billing"),
        )
        return cls.send_email(tenant.billing_email, subject, html)

    @classmethod
    def notify_trial_ending(cls, tenant, trial_ends_at):
        if not tenant.billing_email:
            return False
        subject, html = EmailTemplates.trial_ending(
            tenant,
            trial_ends_at,
            billing_url=cls._billing_url(),
            app_name=current_app.config.get("APP_NAME", "Tenant Billing"),
        )
        return cls.send_email(tenant.billing_email, subject, html)

    @staticmethod
    def _billing_url():
        return f"{current_app.config.get('APP_URL', '').rstrip('/')}/billing"
