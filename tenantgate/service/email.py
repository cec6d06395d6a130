from __future__ import annotations

import smtplib
import ssl
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Iterable, Optional

from tenantgate.config import Settings
from tenantgate.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """
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
        <h1>{title}</h1>
        {paragraphs}
        {action}
        <div class="footer">
            <p>{product}</p>
            {fallback}
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional email over SMTP.

    When no SMTP host is configured the message is logged instead of sent,
    which is the expected mode for local development and tests.
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
        from_name: str = "TenantGate",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.outbox: list[dict] = []

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _render(
        self,
        title: str,
        paragraphs: Iterable[str],
        *,
        action_url: Optional[str] = None,
        action_label: Optional[str] = None,
    ) -> tuple[str, str]:
        paragraphs = list(paragraphs)
        html_paragraphs = "\n        ".join(f"<p>{escape(p)}</p>" for p in paragraphs)
        action = ""
        fallback = ""
        if action_url:
            action = (
                f'<p style="margin: 30px 0;"><a href="{escape(action_url)}" class="button">'
                f"{escape(action_label or 'Open')}</a></p>"
            )
            fallback = (
                "<p>If the button doesn't work, copy and paste this URL: "
                f"{escape(action_url)}</p>"
            )
        html_body = _HTML_TEMPLATE.format(
            title=escape(title),
            paragraphs=html_paragraphs,
            action=action,
            product=escape(self.from_name),
            fallback=fallback,
        )
        text_lines = [title, "", *paragraphs]
        if action_url:
            text_lines.extend(["", action_url])
        text_lines.extend(["", "---", self.from_name])
        return html_body, "\n".join(text_lines) + "\n"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP. Returns True if sent (or logged in dev mode)."""
        if not self.is_configured:
            self.outbox.append({"to": to_email, "subject": subject, "text": text_body})
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        context = ssl.create_default_context()

        try:
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
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=self._redact_email(to_email), error=str(e))
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
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def send_invitation(
        self,
        to_email: str,
        *,
        invitation_id: str,
        organization_name: str,
        inviter_email: Optional[str],
        role: str,
        expires_at: datetime,
    ) -> bool:
        accept_url = f"{self.base_url}/accept-invitation/{invitation_id}"
        inviter = inviter_email or "A teammate"
        html_body, text_body = self._render(
            f"Join {organization_name}",
            [
                f"{inviter} invited you to join {organization_name} as {role}.",
                f"This invitation expires on {expires_at.strftime('%Y-%m-%d %H:%M UTC')}.",
                "If you weren't expecting this, you can ignore this email.",
            ],
            action_url=accept_url,
            action_label="Accept invitation",
        )
        return self._send_email(
            to_email, f"You're invited to join {organization_name}", html_body, text_body
        )

    def send_password_reset(self, to_email: str, token: str, *, ttl_minutes: int = 15) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        html_body, text_body = self._render(
            "Reset your password",
            [
                "We received a request to reset your password.",
                f"This link will expire in {ttl_minutes} minutes.",
                "If you didn't request this, you can safely ignore this email.",
            ],
            action_url=reset_url,
            action_label="Reset password",
        )
        return self._send_email(
            to_email, f"Reset your {self.from_name} password", html_body, text_body
        )

    def send_email_verification(self, to_email: str, token: str, *, ttl_hours: int = 24) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        html_body, text_body = self._render(
            "Verify your email",
            [
                "Please confirm this address to finish setting up your account.",
                f"This link will expire in {ttl_hours} hours.",
            ],
            action_url=verify_url,
            action_label="Verify email",
        )
        return self._send_email(
            to_email, f"Verify your {self.from_name} email", html_body, text_body
        )

    def send_two_factor_enabled(self, to_email: str) -> bool:
        html_body, text_body = self._render(
            "Two-factor authentication enabled",
            [
                "You will now need a code from your authenticator app when signing in.",
                "If you didn't make this change, please contact support immediately.",
            ],
        )
        return self._send_email(
            to_email, "Two-factor authentication enabled", html_body, text_body
        )

    def send_two_factor_otp(self, to_email: str, code: str, *, ttl_minutes: int = 3) -> bool:
        html_body, text_body = self._render(
            "Your sign-in code",
            [
                f"Your verification code is {code}.",
                f"It expires in {ttl_minutes} minutes and can be used once.",
                "If you didn't try to sign in, change your password.",
            ],
        )
        return self._send_email(to_email, f"{self.from_name} sign-in code", html_body, text_body)
