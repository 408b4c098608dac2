"""
auth/email.py -- Delivery of email sign-in links over SMTP.

The message carries both the one-click callback URL and the 6-digit code, so
a user who opened the mail on another device can type the code instead.

Transport:
  SMTP_SECURE=true       implicit TLS (SMTP_SSL), usually port 465
  SMTP_IGNORE_TLS=false  STARTTLS when the server offers it
  SMTP_USERNAME set      LOGIN after the TLS step

Layer rule: no imports from api/.
"""

from __future__ import annotations

import html
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from core.config import Settings

logger = logging.getLogger("builder.auth.email")

_SMTP_TIMEOUT = 10


def _build_html_email(url: str, code: str) -> str:
    safe_url = html.escape(url, quote=True)
    return (
        "<html><body>"
        "<h2>Sign in to Typebot</h2>"
        f'<p><a href="{safe_url}" style="padding:10px 16px;background:#0042da;color:#fff;'
        'border-radius:6px;text-decoration:none">Sign in</a></p>'
        f'<p>Or enter this code: <strong style="font-size:1.25rem;letter-spacing:2px">{code}</strong></p>'
        "<p>The link and the code expire in 5 minutes.</p>"
        "</body></html>"
    )


def _build_text_email(url: str, code: str) -> str:
    return "\n".join(
        [
            "Sign in to Typebot",
            "",
            f"Open this link: {url}",
            f"Or enter this code: {code}",
            "",
            "The link and the code expire in 5 minutes.",
        ]
    )


def send_verification_request(settings: Settings, identifier: str, url: str, code: str) -> bool:
    """Send the sign-in email. Returns True on success, False on any failure."""
    if not settings.smtp_host:
        logger.warning("email_send_skipped: SMTP host not configured")
        return False

    msg = MIMEMultipart("alternative")
    msg["Subject"] = "Sign in to Typebot"
    msg["From"] = settings.smtp_from
    msg["To"] = identifier
    msg.attach(MIMEText(_build_text_email(url, code), "plain"))
    msg.attach(MIMEText(_build_html_email(url, code), "html"))

    smtp_class = smtplib.SMTP_SSL if settings.smtp_secure else smtplib.SMTP
    try:
        with smtp_class(settings.smtp_host, settings.smtp_port, timeout=_SMTP_TIMEOUT) as server:
            if not settings.smtp_secure and not settings.smtp_ignore_tls and server.has_extn("starttls"):
                server.starttls()
            if settings.smtp_username:
                server.login(settings.smtp_username, settings.smtp_password)
            server.sendmail(settings.smtp_from, [identifier], msg.as_string())
        logger.info("email_sent: sign-in link to %s", identifier)
        return True
    except smtplib.SMTPAuthenticationError:
        logger.error("email_auth_failed: could not authenticate with SMTP server")
        return False
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("email_send_failed: %s", exc)
        return False
