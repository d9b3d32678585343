"""Transactional email through the Resend REST API.

Invitation and password-reset notifications share one HTML shell; callers get
the Resend message id back or an exception they can map to an HTTP error.
"""

from __future__ import annotations

import html
import logging
import os
from typing import Any, Dict, List, Optional, Union

import requests
from prometheus_client import Counter

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"
RESEND_FROM_EMAIL = os.getenv("RESEND_FROM_EMAIL", "Zyria <noreply@zyria.ai>")
APP_BASE_URL = (os.getenv("APP_BASE_URL") or "http://localhost:5173").rstrip("/")
INVITATION_VALID_DAYS = 7

try:
    EMAIL_TIMEOUT = float(os.getenv("EMAIL_HTTP_TIMEOUT", "15") or 15)
except ValueError:
    EMAIL_TIMEOUT = 15.0

EMAILS_SENT = Counter(
    "emails_sent_total",
    "Transactional emails by kind and outcome.",
    ("kind", "status"),
)

_SESSION = requests.Session()


def _resend_api_key() -> str:
    return (os.getenv("RESEND_API_KEY") or "").strip()


def send_email(
    to: Union[str, List[str]],
    subject: str,
    html_body: str,
    text_body: Optional[str] = None,
    *,
    kind: str = "generic",
) -> str:
    api_key = _resend_api_key()
    if not api_key:
        EMAILS_SENT.labels(kind=kind, status="error").inc()
        raise RuntimeError("RESEND_API_KEY not configured")

    recipients = [to] if isinstance(to, str) else list(to)
    payload: Dict[str, Any] = {
        "from": RESEND_FROM_EMAIL,
        "to": recipients,
        "subject": subject,
        "html": html_body,
    }
    if text_body:
        payload["text"] = text_body

    try:
        resp = _SESSION.post(
            RESEND_API_URL,
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            json=payload,
            timeout=EMAIL_TIMEOUT,
        )
        resp.raise_for_status()
    except requests.RequestException:
        EMAILS_SENT.labels(kind=kind, status="error").inc()
        logger.exception("resend request failed kind=%s recipients=%s", kind, len(recipients))
        raise

    message_id = (resp.json() or {}).get("id", "")
    EMAILS_SENT.labels(kind=kind, status="sent").inc()
    logger.info("email sent kind=%s recipients=%s message_id=%s", kind, len(recipients), message_id)
    return message_id


def _wrap(title: str, body: str) -> str:
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">'
        '<div style="text-align: center; margin-bottom: 30px;">'
        '<h1 style="color: #333; font-size: 24px; margin: 0;">Zyria</h1></div>'
        f'<h2 style="color: #333; font-size: 20px; margin-bottom: 20px;">{title}</h2>'
        f"{body}"
        '<p style="color: #666; font-size: 14px; margin-top: 30px;">Best regards,<br>The Zyria Team</p>'
        '<hr style="border: none; border-top: 1px solid #eee; margin: 30px 0;">'
        '<p style="color: #999; font-size: 12px; text-align: center;">'
        "This email was sent from Zyria Enterprise AI Platform.</p>"
        "</div>"
    )


def _paragraph(text: str) -> str:
    return f'<p style="color: #666; font-size: 16px; line-height: 1.5; margin-bottom: 25px;">{text}</p>'


def invitation_url(token: str) -> str:
    return f"{APP_BASE_URL}/invite/{token}"


def send_invitation(email: str, token: str, role: str, inviter_name: Optional[str] = None) -> str:
    url = invitation_url(token)
    role_label = (role or "user").strip()
    inviter = html.escape(inviter_name) if inviter_name else "Your administrator"
    body = (
        _paragraph(
            f"{inviter} has invited you to join Zyria as a "
            f"<strong>{html.escape(role_label.capitalize())}</strong>."
        )
        + '<div style="text-align: center; margin: 30px 0;">'
        f'<a href="{html.escape(url)}" style="background-color: #2563eb; color: #fff; padding: 12px 24px; '
        'border-radius: 6px; text-decoration: none;">Accept Invitation</a></div>'
        + _paragraph(f"This invitation will expire in {INVITATION_VALID_DAYS} days.")
    )
    text = (
        f"You've been invited to join Zyria as a {role_label}. "
        f"Visit {url} to accept your invitation and create your account. "
        f"This invitation expires in {INVITATION_VALID_DAYS} days."
    )
    return send_email(
        email,
        f"You're invited to join Zyria as a {role_label}",
        _wrap("You're Invited!", body),
        text,
        kind="invitation",
    )


def send_password_reset(email: str, redirect_to: Optional[str] = None) -> str:
    body = _paragraph(
        "We received a request to reset the password for your Zyria account "
        "associated with this email address."
    )
    if redirect_to:
        body += _paragraph(
            f'You can choose a new password here: <a href="{html.escape(redirect_to)}">Reset password</a>.'
        )
    body += _paragraph(
        "If you didn't request a password reset, you can safely ignore this email. "
        "Your password will remain unchanged."
    )
    return send_email(
        email,
        "Reset Your Zyria Password",
        _wrap("Reset Your Password", body),
        kind="password_reset",
    )
