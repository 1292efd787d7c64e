from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from magiclink.logging import get_logger, redact_email

logger = get_logger(__name__)

# Most specific first; SMTP and SSL errors are OSError subclasses
_FAILURE_EVENTS = (
    (smtplib.SMTPAuthenticationError, "email_auth_failed"),
    (smtplib.SMTPConnectError, "email_connect_failed"),
    (smtplib.SMTPRecipientsRefused, "email_recipient_refused"),
    (smtplib.SMTPException, "email_smtp_error"),
    (ssl.SSLError, "email_ssl_error"),
)


def _failure_event(exc: BaseException) -> str:
    for error_type, event in _FAILURE_EVENTS:
        if isinstance(exc, error_type):
            return event
    return "email_transport_error"


class EmailService:
    """Delivers magic link emails.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Fallback to logging when not configured (dev mode)

    ``send`` is blocking; async callers run it in a worker thread.
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
        from_name: str = "MagicLinkDemo",
        link_ttl_minutes: int = 15,
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.link_ttl_minutes = link_ttl_minutes
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _compose(self, to_email: str, subject: str, html_body: str, text_body: Optional[str]) -> str:
        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = f"{self.from_name} <{self.from_email}>"
        message["To"] = to_email
        # Plain text first, HTML last
        if text_body:
            message.attach(MIMEText(text_body, "plain"))
        message.attach(MIMEText(html_body, "html"))
        return message.as_string()

    def _open(self, context: ssl.SSLContext) -> smtplib.SMTP:
        if not self.smtp_use_tls:
            return smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=self.timeout)
        return smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout)

    def _deliver(self, to_email: str, payload: str) -> None:
        context = ssl.create_default_context()
        with self._open(context) as server:
            if self.smtp_use_tls:
                server.starttls(context=context)
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
            server.sendmail(self.from_email, to_email, payload)

    def send(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Deliver one message; ``False`` means it did not leave this process.

        Without SMTP settings the message is only logged, with the recipient
        masked, and counts as sent.
        """
        recipient = redact_email(to_email)
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=recipient,
                subject=subject,
                body_preview=(text_body or html_body)[:200],
            )
            return True

        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=recipient,
        )
        try:
            self._deliver(to_email, self._compose(to_email, subject, html_body, text_body))
        except (smtplib.SMTPException, OSError) as exc:
            logger.error(
                _failure_event(exc),
                to=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
                smtp_code=getattr(exc, "smtp_code", None),
            )
            return False
        logger.info("email_sent", to=recipient, subject=subject)
        return True

    def render_magic_link(self, link: str) -> tuple[str, str, str]:
        """Return ``(subject, html_body, text_body)`` for a sign-in link."""
        subject = f"Your Magic Link - {self.from_name}"
        safe_link = html.escape(link, quote=True)
        minutes = self.link_ttl_minutes

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Sign in to {html.escape(self.from_name)}</h1>
        <p>Click the button below to sign in. No password needed.</p>
        <p style="margin: 30px 0;">
            <a href="{safe_link}" class="button">Sign In</a>
        </p>
        <p>This link expires in {minutes} minutes and can only be used once.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>
        <div class="footer">
            <p>{html.escape(self.from_name)}</p>
            <p>If the button doesn't work, copy and paste this URL: {safe_link}</p>
        </div>
    </div>
</body>
</html>
"""

        text_body = f"""Sign in to {self.from_name}

Visit the link below to sign in:

{link}

This link expires in {minutes} minutes and can only be used once.

If you didn't request this, you can safely ignore this email.

---
{self.from_name}
"""
        return subject, html_body, text_body

    def send_magic_link(self, to_email: str, link: str) -> bool:
        subject, html_body, text_body = self.render_magic_link(link)
        return self.send(to_email, subject, html_body, text_body)
