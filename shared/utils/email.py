"""
shared/utils/email.py
Transactional email via Resend, behind a circuit breaker.
send_email() never raises: callers get True/False.
"""

import logging
from html import escape

import resend
from pybreaker import CircuitBreaker, CircuitBreakerError

from config.settings import settings

logger = logging.getLogger(__name__)

email_breaker = CircuitBreaker(
    fail_max=5,          # Open after 5 consecutive failures
    reset_timeout=60,    # Try again after 60 seconds
    name="resend",
)


def _deliver(to_email: str, subject: str, html_body: str) -> None:
    resend.api_key = settings.RESEND_API_KEY
    resend.Emails.send({
        "from": f"{settings.EMAIL_FROM_NAME} <{settings.EMAIL_FROM}>",
        "to": [to_email],
        "subject": subject,
        "html": html_body,
    })


def send_email(to_email: str, subject: str, html_body: str) -> bool:
    """Send transactional email. Returns True on success."""
    if not settings.RESEND_API_KEY:
        logger.warning("RESEND_API_KEY not configured, email to %s not sent", to_email)
        return False
    try:
        email_breaker.call(_deliver, to_email, subject, html_body)
        return True
    except CircuitBreakerError:
        logger.warning("Email circuit open, skipping send to %s", to_email)
        return False
    except Exception as e:
        logger.warning("Email send failed for %s: %s", to_email, e)
        return False


def render_reset_code_email(name: str, code: str) -> str:
    return (
        f"<p>Hello {escape(name)},</p>"
        f"<p>Your password reset code is <strong>{code}</strong>.</p>"
        f"<p>It expires in {settings.PASSWORD_RESET_CODE_TTL_MINUTES} minutes. "
        "If you did not ask for it, ignore this email.</p>"
    )
