from markupsafe import escape

_LAYOUT = """
<!DOCTYPE html>
<html>
<head>
    <style>
        body {{ font-family: Arial, sans-serif; line-height: 1.6; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
        .header {{ background: {accent}; color: white; padding: 20px; text-align: center; }}
        .content {{ padding: 30px; background: #f8f9fa; }}
        .button {{ display: inline-block; background: #007bff; color: white; padding: 12px 24px; text-decoration: none; border-radius: 4px; }}
        .footer {{ margin-top: 30px; padding-top: 20px; border-top: 1px solid #dee2e6; color: #6c757d; }}
    </style>
</head>
<body>
    <div class="container">
        <div class="header"><h1>{title}</h1></div>
        <div class="content">{body}</div>
        <div class="footer"><p>{app_name}</p></div>
    </div>
</body>
</html>
"""


class EmailTemplates:
    """Email template definitions. Each returns ``(subject, html)``."""

    @staticmethod
    def grace_period_notice(tenant, day_number, grace_period_end, days_remaining,
                            billing_url, app_name="Tenant Billing"):
        if days_remaining <= 1:
            subject = "Final notice: your workspace data will be removed soon"
            accent = "#dc3545"
        else:
            subject = f"Your subscription has ended: {days_remaining} days left to renew"
            accent = "#fd7e14"

        body = f"""
            <p>Hello {escape(tenant.name)},</p>
            <p>Your subscription was canceled and your account is in its grace period
            (day {day_number}). Your data stays available until
            <strong>{grace_period_end.strftime('%B %d, %Y')}</strong>.</p>
            <p>Renew before then to keep full access.</p>
            <p style="text-align: center; margin: 30px 0;">
                <a href="{escape(billing_url)}" class="button">Renew Subscription</a>
            </p>
        """
        html = _LAYOUT.format(
            accent=accent,
            title="Subscription Grace Period",
            body=body,
            app_name=escape(app_name),
        )
        return subject, html

    @staticmethod
    def trial_ending(tenant, trial_ends_at, billing_url, app_name="Tenant Billing"):
        subject = "Your trial is ending soon"
        ends = trial_ends_at.strftime("%B %d, %Y") if trial_ends_at else "soon"
        body = f"""
            <p>Hello {escape(tenant.name)},</p>
            <p>Your free trial ends on <strong>{ends}</strong>.
            Add a payment method to keep your workspace running without interruption.</p>
            <p style="text-align: center; margin: 30px 0;">
                <a href="{escape(billing_url)}" class="button">Manage Billing</a>
            </p>
        """
        html = _LAYOUT.format(
            accent="#17a2b8",
            title="Trial Ending",
            body=body,
            app_name=escape(app_name),
        )
        return subject, html
