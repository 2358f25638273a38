# app/services/email.py
from __future__ import annotations

import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Iterable
from urllib.parse import quote

import requests

from app.config import Settings
from app.services.senders import SendResult

log = logging.getLogger(__name__)

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"


# ---- internal helpers --------------------------------------------------------


def _as_list(v: str | Iterable[str] | None) -> list[str]:
    if not v:
        return []
    if isinstance(v, str):
        return [v]
    return [x for x in v if x]


def _detect_sendgrid_api_key(settings: Settings) -> str | None:
    """
    Prefer explicit SENDGRID_API_KEY; otherwise, if SendGrid SMTP is configured
    (host=smtp.sendgrid.net, username=apikey) with an SG.* password, use that.
    """
    if settings.SENDGRID_API_KEY:
        return settings.SENDGRID_API_KEY
    host = (settings.SMTP_HOST or "").lower().strip()
    pwd = settings.SMTP_PASSWORD or ""
    if host == "smtp.sendgrid.net" and settings.SMTP_USERNAME == "apikey" and pwd.startswith("SG."):
        return pwd
    return None


class EmailSender:
    """
    Sends one email through the SendGrid HTTP API when a key is available,
    otherwise through SMTP. Honors EMAIL_DRY_RUN. Never raises.
    """

    def __init__(self, settings: Settings, http: requests.Session | None = None):
        self.settings = settings
        self.http = http or requests.Session()

    def send(
        self,
        to: str | Iterable[str],
        subject: str,
        text: str,
        html: str | None = None,
    ) -> SendResult:
        to_list = _as_list(to)
        if not to_list:
            log.error("[email] send called with empty recipient list")
            return SendResult(ok=False, error="No recipient")

        if self.settings.EMAIL_DRY_RUN:
            log.info("[email] DRY RUN to=%s subject=%s", to_list, subject)
            return SendResult(ok=True, message_id="dry-run")

        # Try SendGrid API first if key is present; fall back to SMTP
        if _detect_sendgrid_api_key(self.settings):
            result = self._send_via_sendgrid(to_list, subject, text, html)
            if result.ok:
                return result
        return self._send_via_smtp(to_list, subject, text, html)

    def _send_via_sendgrid(self, to, subject, text, html=None) -> SendResult:
        s = self.settings
        payload = {
            "personalizations": [{"to": [{"email": e} for e in to]}],
            "from": {"email": s.FROM_EMAIL, "name": s.FROM_NAME or s.FROM_EMAIL},
            "subject": subject,
            "content": [{"type": "text/plain", "value": text or ""}],
        }
        if html:
            payload["content"].append({"type": "text/html", "value": html})

        try:
            resp = self.http.post(
                SENDGRID_URL,
                json=payload,
                headers={"Authorization": f"Bearer {_detect_sendgrid_api_key(s)}"},
                timeout=s.SEND_TIMEOUT_SECONDS,
            )
        except requests.RequestException as e:
            log.error("[email] SendGrid network error: %s", e)
            return SendResult(ok=False, error=f"SendGrid network error: {e}")

        if resp.status_code >= 400:
            log.error("[email] SendGrid HTTP %s: %s", resp.status_code, resp.text[:500])
            return SendResult(ok=False, error=f"SendGrid HTTP {resp.status_code}")

        log.info("[email] SendGrid send ok -> %s", to)
        return SendResult(ok=True, message_id=resp.headers.get("X-Message-Id"))

    def _send_via_smtp(self, to, subject, text, html=None) -> SendResult:
        s = self.settings
        if not (s.SMTP_HOST and s.SMTP_USERNAME and s.SMTP_PASSWORD):
            log.error("[email] SMTP creds missing (host/user/pwd)")
            return SendResult(ok=False, error="Email channel not configured")

        msg = EmailMessage()
        msg["From"] = f"{s.FROM_NAME or s.FROM_EMAIL} <{s.FROM_EMAIL}>"
        msg["To"] = ", ".join(to)
        msg["Subject"] = subject
        msg.set_content(text or "")
        if html:
            msg.add_alternative(html, subtype="html")

        try:
            context = ssl.create_default_context()
            with smtplib.SMTP(s.SMTP_HOST, s.SMTP_PORT, timeout=s.SEND_TIMEOUT_SECONDS) as smtp:
                smtp.ehlo()
                smtp.starttls(context=context)
                smtp.ehlo()
                smtp.login(s.SMTP_USERNAME, s.SMTP_PASSWORD)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            log.error("[email] SMTP send failed: %s", e)
            return SendResult(ok=False, error=f"SMTP error: {e}")

        log.info("[email] SMTP send ok -> %s via %s:%s", to, s.SMTP_HOST, s.SMTP_PORT)
        return SendResult(ok=True)


# ---- message bodies ----------------------------------------------------------


def registration_url(settings: Settings, email: str) -> str:
    return f"{settings.APP_BASE_URL}/registro?email={quote(email or '')}"


def _wrap_html(site_name: str, inner: str) -> str:
    return f"""
    <div style="font-family:system-ui,-apple-system,Segoe UI,Roboto,Arial">
      {inner}
      <p>- {site_name} Team</p>
    </div>
    """.strip()


def follow_up_email(settings: Settings, name: str, email: str) -> tuple[str, str, str]:
    """Email 2 of the lead sequence: (subject, text, html)."""
    who = (name or "").strip() or "there"
    link = registration_url(settings, email)
    subject = f"{who}, your spot at {settings.SITE_NAME} is still waiting"
    text = "\n".join([
        f"Hi {who},",
        "",
        f"A couple of days ago you were approved to join {settings.SITE_NAME}.",
        "Your account is not created yet. It takes less than a minute:",
        link,
        "",
        f"- {settings.SITE_NAME} Team",
    ])
    html = _wrap_html(settings.SITE_NAME, (
        f"<p>Hi {who},</p>"
        f"<p>A couple of days ago you were approved to join <b>{settings.SITE_NAME}</b>. "
        f"Your account is not created yet.</p>"
        f'<p><a href="{link}">Create my account</a></p>'
    ))
    return subject, text, html


_ONBOARDING_COPY = {
    1: (
        "Welcome to {site}, {name}!",
        "Your account is ready. Make your first post and earn your first heart.",
        "/feed",
    ),
    2: (
        "{name}, the community is waiting for your first post",
        "Challenges are open right now. Join one and start earning hearts.",
        "/desafios",
    ),
    3: (
        "We miss you at {site}",
        "New rewards were added this week. Come back and see what you can claim.",
        "/premios",
    ),
}


def onboarding_email(settings: Settings, step: int, name: str) -> tuple[str, str, str]:
    """Onboarding email N (1..3): (subject, text, html)."""
    subject_tpl, body, path = _ONBOARDING_COPY[step]
    who = (name or "").strip() or "friend"
    subject = subject_tpl.format(site=settings.SITE_NAME, name=who)
    link = f"{settings.APP_BASE_URL}{path}"
    text = f"Hi {who},\n\n{body}\n{link}\n\n- {settings.SITE_NAME} Team"
    html = _wrap_html(settings.SITE_NAME, f'<p>Hi {who},</p><p>{body}</p><p><a href="{link}">Open {settings.SITE_NAME}</a></p>')
    return subject, text, html
