from __future__ import annotations

import html
import smtplib
import ssl
from email.message import EmailMessage
from typing import Optional

from vidtube.logging import get_logger

logger = get_logger(__name__)

SMTP_TIMEOUT_SECONDS = 30


class EmailService:
    """Transactional email over SMTP.

    Supports:
    - SMTP with STARTTLS or implicit SSL
    - Password reset emails
    - Fallback to logging when not configured (dev mode)
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "VidTube",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _build_message(
        self, to_email: str, subject: str, html_body: str, text_body: Optional[str]
    ) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = f"{self.from_name} <{self.from_email}>"
        message["To"] = to_email
        message.set_content(text_body or "")
        message.add_alternative(html_body, subtype="html")
        return message

    def _open_connection(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=SMTP_TIMEOUT_SECONDS)
            try:
                server.starttls(context=context)
            except (smtplib.SMTPException, OSError):
                server.close()
                raise
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=SMTP_TIMEOUT_SECONDS
            )
        return server

    def send(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Deliver one message. Without SMTP settings the message is only logged.

        Delivery failures are logged and reported as ``False``.
        """
        recipient = self._redact_email(to_email)
        if not self.is_configured:
            logger.info("email_dev_mode", to=recipient, subject=subject)
            return True

        message = self._build_message(to_email, subject, html_body, text_body)
        try:
            with self._open_connection() as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=recipient,
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("email_sent", to=recipient, subject=subject)
        return True

    def send_password_reset(
        self, to_email: str, reset_url: str, handle: str, *, ttl_minutes: int = 10
    ) -> bool:
        """Send the password reset link."""
        safe_url = html.escape(reset_url, quote=True)
        safe_handle = html.escape(handle)
        subject = "Reset your VidTube password"

        html_body = f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; color: #1f2933;">
    <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">
        <h1>Reset your password</h1>
        <p>Hi {safe_handle},</p>
        <p>We received a request to reset your password. Use the link below to choose a new one:</p>
        <p style="margin: 30px 0;"><a href="{safe_url}">Reset Password</a></p>
        <p>This link expires in {ttl_minutes} minutes and can be used once.</p>
        <p>If you didn't request this, you can ignore this email.</p>
        <p style="font-size: 12px; color: #5b6470;">{safe_url}</p>
    </div>
</body>
</html>
"""

        text_body = f"""Hi {handle},

We received a request to reset your VidTube password. Visit the link below to choose a new one:

{reset_url}

This link expires in {ttl_minutes} minutes and can be used once.

If you didn't request this, you can ignore this email.
"""

        return self.send(to_email, subject, html_body, text_body)
