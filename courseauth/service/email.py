from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from enum import Enum
from html import escape
from typing import Optional

from courseauth.logging import get_logger

logger = get_logger(__name__)


class EmailTemplate(str, Enum):
    """Account confirmation messages.

    - CONFIRM_EMAIL: the body carries a confirmation link
    - ACTIVATE_ACCOUNT: the body carries a numeric activation code
    """

    CONFIRM_EMAIL = "confirm_email"
    ACTIVATE_ACCOUNT = "activate_account"


_HTML_SHELL = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .code {{ font-size: 28px; letter-spacing: 6px; font-weight: 700; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        <p>Hello {name},</p>
        {content}
        <div class="footer">
            <p>{sender}</p>
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Email service for account confirmation messages.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Confirmation links and activation codes
    - Fallback to logging when not configured (dev mode)

    ``send`` never raises for delivery problems; it logs and returns False.
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
        from_name: str = "Course Platform",
        activation_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.activation_url = activation_url or "http://localhost:4200/activate-account"

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def render(
        self,
        template: EmailTemplate | str,
        recipient_name: str,
        link_or_code: str,
    ) -> tuple[str, str]:
        """Return ``(html_body, text_body)`` for a confirmation message."""
        template = EmailTemplate(template)
        name = recipient_name or "there"
        if template == EmailTemplate.CONFIRM_EMAIL:
            title = "Confirm your email"
            content = (
                "<p>Thanks for signing up! Please confirm your email address:</p>"
                f'<p style="margin: 30px 0;"><a href="{escape(link_or_code, quote=True)}" class="button">Confirm Email</a></p>'
                f"<p>If the button doesn't work, copy and paste this URL: {escape(link_or_code)}</p>"
            )
            text_body = (
                f"{title}\n\nHello {name},\n\n"
                f"Thanks for signing up! Please confirm your email address by visiting:\n\n{link_or_code}\n"
            )
        else:
            title = "Activate your account"
            content = (
                "<p>Use the code below to activate your account. It expires in a few minutes.</p>"
                f'<p class="code">{escape(link_or_code)}</p>'
                f'<p>Enter it at <a href="{escape(self.activation_url, quote=True)}">{escape(self.activation_url)}</a>.</p>'
            )
            text_body = (
                f"{title}\n\nHello {name},\n\n"
                f"Your activation code is {link_or_code}\n\nEnter it at {self.activation_url}\n"
            )
        html_body = _HTML_SHELL.format(
            title=title,
            name=escape(name),
            content=content,
            sender=escape(self.from_name),
        )
        return html_body, f"{text_body}\n---\n{self.from_name}\n"

    def send(
        self,
        to_address: str,
        recipient_name: str,
        template: EmailTemplate | str,
        link_or_code: str,
        subject: str,
    ) -> bool:
        html_body, text_body = self.render(template, recipient_name, link_or_code)
        return self._send_email(to_address, subject, html_body, text_body)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email

            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()

            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=self._redact_email(to_email),
            )

            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except OSError as e:
            # Connection refused, DNS failures and socket timeouts
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
