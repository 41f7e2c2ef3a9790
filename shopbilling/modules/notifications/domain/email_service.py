"""
Email Notification Service

Sends billing emails (payment confirmations, rejections) via SMTP.
Delivery is best effort: failures are logged and reported as `False`.
"""

import asyncio
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from string import Template
from typing import Any, Mapping

import structlog

from shopbilling.shared.core.config import get_settings

logger = structlog.get_logger()


class EmailTemplate:
    def __init__(self, subject: str, html: str) -> None:
        self.subject = Template(subject)
        self.html = Template(html)

    def render(self, variables: Mapping[str, Any]) -> tuple[str, str]:
        # Shop names and rejection reasons are free text; the subject is a plain header.
        escaped = {key: escape(str(value)) for key, value in variables.items()}
        return (
            self.subject.safe_substitute(variables),
            self.html.safe_substitute(escaped),
        )


TEMPLATES: dict[str, EmailTemplate] = {
    "payment_verified": EmailTemplate(
        subject="Payment received for invoice $invoice_number",
        html="""
        <html>
        <body style="font-family: Arial, sans-serif; padding: 20px;">
            <h2 style="color: #16a34a;">Payment confirmed</h2>
            <p>Hi $shop_name,</p>
            <p>We have verified your payment of <strong>$currency $amount</strong>
               for invoice <strong>$invoice_number</strong>.</p>
            <p>$activation_summary</p>
            <p><a href="$dashboard_url">Open your billing dashboard</a></p>
            <p style="color: #666; font-size: 12px;">Questions? Contact $support_email</p>
        </body>
        </html>
        """,
    ),
    "payment_rejected": EmailTemplate(
        subject="Payment for invoice $invoice_number could not be verified",
        html="""
        <html>
        <body style="font-family: Arial, sans-serif; padding: 20px;">
            <h2 style="color: #dc2626;">Payment not verified</h2>
            <p>Hi $shop_name,</p>
            <p>We could not verify the payment submitted for invoice
               <strong>$invoice_number</strong>.</p>
            <p><strong>Reason:</strong> $reason</p>
            <p>Please submit a new payment or contact $support_email.</p>
            <p><a href="$dashboard_url">Open your billing dashboard</a></p>
        </body>
        </html>
        """,
    ),
}


class EmailService:
    """Service for sending email notifications."""

    def __init__(
        self,
        smtp_host: str,
        smtp_port: int,
        smtp_user: str | None,
        smtp_password: str | None,
        from_email: str,
        timeout_seconds: float = 10.0,
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.from_email = from_email
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls) -> "EmailService | None":
        """Build from settings, or None when SMTP is not configured."""
        settings = get_settings()
        if not settings.SMTP_HOST:
            return None
        return cls(
            smtp_host=settings.SMTP_HOST,
            smtp_port=settings.SMTP_PORT,
            smtp_user=settings.SMTP_USER,
            smtp_password=settings.SMTP_PASSWORD,
            from_email=settings.SMTP_FROM,
            timeout_seconds=settings.SMTP_TIMEOUT_SECONDS,
        )

    async def send_template_email(
        self, to: str | list[str], template: str, variables: Mapping[str, Any]
    ) -> bool:
        """
        Render a named template and send it.

        Returns True when the SMTP server accepted the message.
        """
        recipients = [to] if isinstance(to, str) else list(to)
        if not recipients:
            logger.warning("email_skipped_no_recipients", template=template)
            return False

        email_template = TEMPLATES.get(template)
        if email_template is None:
            logger.error("email_template_unknown", template=template)
            return False

        settings = get_settings()
        context = {
            "dashboard_url": f"{settings.FRONTEND_URL.rstrip('/')}/billing",
            "support_email": settings.SUPPORT_EMAIL,
            **variables,
        }
        subject, html_body = email_template.render(context)

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.from_email
        msg["To"] = ", ".join(recipients)
        msg.attach(MIMEText(html_body, "html"))

        try:
            await asyncio.to_thread(self._send, recipients, msg.as_string())
        except Exception as e:
            logger.error("email_send_failed", template=template, error=str(e))
            return False

        logger.info("email_sent", template=template, recipients=len(recipients))
        return True

    def _send(self, recipients: list[str], message: str) -> None:
        with smtplib.SMTP(
            self.smtp_host, self.smtp_port, timeout=self.timeout_seconds
        ) as server:
            server.starttls()
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
            server.sendmail(self.from_email, recipients, message)
