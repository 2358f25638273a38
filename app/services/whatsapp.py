# app/services/whatsapp.py
import logging
from typing import Optional

from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from app.config import Settings
from app.services.senders import SendResult
from app.utils.phone import normalize_phone, whatsapp_address

log = logging.getLogger(__name__)


class WhatsAppSender:
    """
    Sends WhatsApp messages through Twilio.

    The Twilio client is built lazily once per sender; the sender itself is
    constructed at startup and handed to the dispatcher.
    """

    def __init__(self, settings: Settings, client: Optional[Client] = None):
        self.settings = settings
        self._client = client

    @property
    def configured(self) -> bool:
        s = self.settings
        if s.WHATSAPP_DRY_RUN:
            return True
        return bool(s.TWILIO_ACCOUNT_SID and s.TWILIO_AUTH_TOKEN and s.TWILIO_WHATSAPP_FROM)

    def _get_client(self) -> Client:
        if self._client is None:
            s = self.settings
            if not (s.TWILIO_ACCOUNT_SID and s.TWILIO_AUTH_TOKEN):
                raise RuntimeError("Missing TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN")
            self._client = Client(s.TWILIO_ACCOUNT_SID, s.TWILIO_AUTH_TOKEN)
        return self._client

    def send(self, to: str, body: str) -> SendResult:
        phone = normalize_phone(to, self.settings.DEFAULT_PHONE_REGION)
        if not phone:
            log.error("[whatsapp] invalid phone=%r", to)
            return SendResult(ok=False, error=f"Invalid phone number: {to!r}")

        if self.settings.WHATSAPP_DRY_RUN:
            log.info("[whatsapp] DRY-RUN to=%s body=%s", phone, body)
            return SendResult(ok=True, message_id="dry-run")

        if not self.configured:
            return SendResult(ok=False, error="WhatsApp channel not configured")

        try:
            msg = self._get_client().messages.create(
                to=whatsapp_address(phone),
                from_=whatsapp_address(self.settings.TWILIO_WHATSAPP_FROM),
                body=body,
            )
        except (TwilioException, RuntimeError) as e:
            log.error("[whatsapp] send failed to=%s err=%s", phone, e)
            return SendResult(ok=False, error=f"Twilio error: {e}")

        if getattr(msg, "error_code", None):
            log.error("[whatsapp] twilio error_code=%s msg=%s", msg.error_code, msg.error_message)
            return SendResult(ok=False, message_id=msg.sid, error=msg.error_message or f"Twilio error {msg.error_code}")

        log.info("[whatsapp] sent sid=%s to=%s", msg.sid, phone)
        return SendResult(ok=True, message_id=msg.sid)


# ---------- message bodies ----------

def final_whatsapp_body(site_name: str, name: str, registration_url: str) -> str:
    who = (name or "").split(" ")[0] or "there"
    return (
        f"Hi {who}! Your spot at {site_name} is still reserved. "
        f"Challenges, events and rewards are waiting for you. "
        f"Create your account here: {registration_url}"
    )


def nudge_whatsapp_body(site_name: str, name: str, registration_url: str) -> str:
    who = (name or "").split(" ")[0] or "there"
    return (
        f"Hi {who}, we sent you an email from {site_name} but it looks like it got lost. "
        f"You were approved! Finish your signup here: {registration_url}"
    )
