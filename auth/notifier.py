"""
auth/notifier.py -- Outbound notification contract for recovery and activation mail.

Delivery is best-effort. Every send returns a Delivery value instead of
raising: the orchestrator logs a failed delivery and carries on, so a mail
outage can neither break password recovery for other callers nor reveal to the
requester whether the address exists.

Implementations:
  SmtpNotifier -- smtplib over STARTTLS or implicit TLS.
  LogNotifier  -- fallback used when SMTP_HOST is empty. Logs a redacted
                  recipient and the link with its token masked, sends nothing.
"""

from __future__ import annotations

import html
import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import TYPE_CHECKING, Protocol
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from auth.models import DEFAULT_RECOVERY_MINUTES

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("tenantgate.auth.notifier")


@dataclass(frozen=True)
class Delivery:
    ok: bool
    error: str | None = None


class Notifier(Protocol):
    def send_password_reset(self, to_email: str, name: str, reset_url: str, code: str) -> Delivery: ...

    def send_activation(self, to_email: str, name: str, activation_url: str, code: str) -> Delivery: ...


def redact_email(email: str) -> str:
    """Keep the first two characters of the local part: 'al***@example.com'."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def redact_link(url: str) -> str:
    """Mask the token query parameter of a recovery link."""
    parts = urlsplit(url)
    query = [(k, "***" if k == "token" else v) for k, v in parse_qsl(parts.query, keep_blank_values=True)]
    return urlunsplit(parts._replace(query=urlencode(query, safe="*")))


# ---------------------------------------------------------------------------
# Message bodies
# ---------------------------------------------------------------------------


def _reset_bodies(name: str, url: str, code: str, brand: str, minutes: int) -> tuple[str, str, str]:
    subject = f"Reset your {brand} password"
    text = (
        f"Hello {name},\n\n"
        "We received a request to reset your password. Open the link below to choose a new one:\n\n"
        f"{url}\n\n"
        f"Or enter this code: {code}\n\n"
        f"The link expires in {minutes} minutes. If you did not ask for this, ignore this email.\n"
    )
    html_body = (
        f"<p>Hello {html.escape(name)},</p>"
        "<p>We received a request to reset your password.</p>"
        f'<p><a href="{html.escape(url, quote=True)}">Reset password</a></p>'
        f"<p>Or enter this code: <strong>{html.escape(code)}</strong></p>"
        f"<p>The link expires in {minutes} minutes. If you did not ask for this, ignore this email.</p>"
    )
    return subject, text, html_body


def _activation_bodies(name: str, url: str, code: str, brand: str, minutes: int) -> tuple[str, str, str]:
    subject = f"Activate your {brand} account"
    text = (
        f"Hello {name},\n\n"
        "An account has been created for you. Open the link below to set your password:\n\n"
        f"{url}\n\n"
        f"Or enter this code: {code}\n\n"
        f"The link expires in {minutes} minutes. Ask your administrator for a new one if it does.\n"
    )
    html_body = (
        f"<p>Hello {html.escape(name)},</p>"
        "<p>An account has been created for you.</p>"
        f'<p><a href="{html.escape(url, quote=True)}">Set your password</a></p>'
        f"<p>Or enter this code: <strong>{html.escape(code)}</strong></p>"
        f"<p>The link expires in {minutes} minutes.</p>"
    )
    return subject, text, html_body


# ---------------------------------------------------------------------------
# Implementations
# ---------------------------------------------------------------------------


class LogNotifier:
    """Writes a trace of the would-be email to the log. Never fails."""

    def __init__(self, brand: str = "TenantGate") -> None:
        self.brand = brand

    def send_password_reset(self, to_email: str, name: str, reset_url: str, code: str) -> Delivery:
        logger.info("Password reset mail (log only) to %s: %s", redact_email(to_email), redact_link(reset_url))
        return Delivery(ok=True)

    def send_activation(self, to_email: str, name: str, activation_url: str, code: str) -> Delivery:
        logger.info("Activation mail (log only) to %s: %s", redact_email(to_email), redact_link(activation_url))
        return Delivery(ok=True)


class SmtpNotifier:
    """Sends multipart text/HTML mail through an SMTP relay."""

    def __init__(
        self,
        *,
        host: str,
        port: int = 587,
        user: str = "",
        password: str = "",
        use_tls: bool = True,
        from_email: str = "",
        from_name: str = "TenantGate",
        timeout: float = 30.0,
        expire_minutes: int = DEFAULT_RECOVERY_MINUTES,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.from_email = from_email or user
        self.from_name = from_name
        self.timeout = timeout
        self.expire_minutes = expire_minutes

    def send_password_reset(self, to_email: str, name: str, reset_url: str, code: str) -> Delivery:
        return self._send(to_email, *_reset_bodies(name, reset_url, code, self.from_name, self.expire_minutes))

    def send_activation(self, to_email: str, name: str, activation_url: str, code: str) -> Delivery:
        return self._send(
            to_email, *_activation_bodies(name, activation_url, code, self.from_name, self.expire_minutes)
        )

    def _send(self, to_email: str, subject: str, text_body: str, html_body: str) -> Delivery:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.use_tls:
                with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.user and self.password:
                        server.login(self.user, self.password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(self.host, self.port, context=context, timeout=self.timeout) as server:
                    if self.user and self.password:
                        server.login(self.user, self.password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "Mail to %s failed (%s): %s", redact_email(to_email), type(exc).__name__, exc
            )
            return Delivery(ok=False, error=type(exc).__name__)

        logger.info("Mail sent to %s: %s", redact_email(to_email), subject)
        return Delivery(ok=True)


def build_notifier(settings: Settings) -> Notifier:
    """SmtpNotifier when SMTP_HOST is set, LogNotifier otherwise."""
    if settings.smtp_host:
        return SmtpNotifier(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            from_email=settings.mail_from,
            from_name=settings.mail_from_name,
            expire_minutes=settings.recovery_token_expire_minutes,
        )
    logger.warning("SMTP_HOST not set: recovery and activation mail will only be logged.")
    return LogNotifier(brand=settings.mail_from_name)
