from __future__ import annotations

import smtplib
import ssl
from datetime import datetime
from email.mime.text import MIMEText
from typing import Optional

from feastid.logging import get_logger

logger = get_logger(__name__)


class EmailService:
    """Plain-text delivery of login passcodes and invitation links.

    Falls back to logging when SMTP is not configured (dev mode).
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
        from_name: str = "XianFeast",
        log_bodies: bool = False,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.log_bodies = log_bodies
        self.outbox: list[tuple[str, str, str]] = []

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(self, to_email: str, subject: str, body: str) -> bool:
        """Send one message; returns False on delivery failure instead of raising."""
        if not self.is_configured:
            self.outbox.append((to_email, subject, body))
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=body[:200] if self.log_bodies else None,
            )
            return True

        msg = MIMEText(body, "plain")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
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
            logger.error(
                "email_recipient_refused", to=self._redact_email(to_email), error=str(e)
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
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def send_login_code(self, to_email: str, code: str, expires_at: datetime) -> bool:
        minutes = max(1, int((expires_at - datetime.now(expires_at.tzinfo)).total_seconds() // 60))
        body = (
            f"Your {self.from_name} sign-in code is {code}.\n\n"
            f"It expires in {minutes} minutes and can be used once.\n"
            "If you didn't try to sign in, you can ignore this email.\n"
        )
        return self._send_email(to_email, f"Your {self.from_name} sign-in code", body)

    def send_invitation(
        self,
        to_email: str,
        invite_url: str,
        expires_at: datetime,
        *,
        invited_by: Optional[str] = None,
    ) -> bool:
        inviter = f" by {invited_by}" if invited_by else ""
        hours = max(1, round((expires_at - datetime.now(expires_at.tzinfo)).total_seconds() / 3600))
        body = (
            f"You have been invited{inviter} to {self.from_name}.\n\n"
            f"Set your password to activate your account:\n\n{invite_url}\n\n"
            f"This link can be used once and expires in {hours} hours.\n"
        )
        return self._send_email(to_email, f"You're invited to {self.from_name}", body)
