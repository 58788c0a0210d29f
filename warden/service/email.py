from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from warden.config import Settings
from warden.logging import get_logger, redact_email

logger = get_logger(__name__)


class Notifier(Protocol):
    """Outbound messages the identity core needs to send."""

    def send_mfa_code(self, to_email: str, code: str) -> bool: ...

    def send_password_reset(self, to_email: str, token: str) -> bool: ...

    def send_email_verification(self, to_email: str, token: str) -> bool: ...

    def send_registration_link(self, to_email: str, token: str) -> bool: ...


_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933;">
  <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">
    <h1>{title}</h1>
    {body}
    <p style="margin-top: 40px; font-size: 12px; color: #5b6470;">{product}</p>
  </div>
</body>
</html>
"""


class EmailService:
    """SMTP implementation of ``Notifier``.

    When no SMTP host is configured the message is logged instead of sent,
    which is what development and test runs rely on.
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
        from_name: str = "Warden",
        base_url: str = "http://localhost:4200",
        mfa_code_ttl_minutes: int = 5,
        password_reset_ttl_hours: int = 1,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url.rstrip("/")
        self.mfa_code_ttl_minutes = mfa_code_ttl_minutes
        self.password_reset_ttl_hours = password_reset_ttl_hours

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
            mfa_code_ttl_minutes=settings.mfa_code_ttl_minutes,
            password_reset_ttl_hours=settings.password_reset_ttl_hours,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _send_email(self, to_email: str, subject: str, title: str, paragraphs: list[str]) -> bool:
        text_body = "\n\n".join([title, *paragraphs, f"---\n{self.from_name}"])
        if not self.is_configured:
            logger.info("email_dev_mode", to=redact_email(to_email), subject=subject)
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        html_body = _HTML_TEMPLATE.format(
            title=title,
            body="\n    ".join(f"<p>{p}</p>" for p in paragraphs),
            product=self.from_name,
        )
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
            logger.error("email_auth_failed", host=self.smtp_host, error=str(e))
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redact_email(to_email), error=str(e))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True

    def send_mfa_code(self, to_email: str, code: str) -> bool:
        return self._send_email(
            to_email,
            "Your verification code",
            "Your sign-in code",
            [
                f"Enter this code to finish signing in: <b>{code}</b>",
                f"The code expires in {self.mfa_code_ttl_minutes} minutes.",
                "If you did not try to sign in, change your password.",
            ],
        )

    def send_password_reset(self, to_email: str, token: str) -> bool:
        reset_url = f"{self.base_url}/auth/reset-password?token={token}"
        return self._send_email(
            to_email,
            f"Reset your {self.from_name} password",
            "Reset your password",
            [
                f"Choose a new password here: {reset_url}",
                f"This link expires in {self.password_reset_ttl_hours} hour(s).",
                "If you didn't request this, you can safely ignore this email.",
            ],
        )

    def send_email_verification(self, to_email: str, token: str) -> bool:
        verify_url = f"{self.base_url}/auth/verify-email?token={token}"
        return self._send_email(
            to_email,
            f"Verify your {self.from_name} email",
            "Verify your email",
            [f"Confirm this address here: {verify_url}"],
        )

    def send_registration_link(self, to_email: str, token: str) -> bool:
        register_url = f"{self.base_url}/auth/complete-registration?token={token}"
        return self._send_email(
            to_email,
            f"Finish creating your {self.from_name} account",
            "Finish signing up",
            [
                f"Choose a username and password here: {register_url}",
                "If you didn't start a registration, you can ignore this email.",
            ],
        )
