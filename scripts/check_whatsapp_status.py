# scripts/check_whatsapp_status.py
# Shows the last outbound WhatsApp messages from the configured Twilio sender.
from twilio.rest import Client

from app.config import settings
from app.utils.phone import whatsapp_address


def main(limit: int = 10) -> None:
    if not (settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN and settings.TWILIO_WHATSAPP_FROM):
        raise SystemExit("Twilio WhatsApp is not configured (TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN / TWILIO_WHATSAPP_FROM)")

    c = Client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
    sender = whatsapp_address(settings.TWILIO_WHATSAPP_FROM)

    for m in c.messages.list(from_=sender, limit=limit):
        print(
            m.sid,
            "status:", m.status,
            "error:", m.error_code, m.error_message,
            "to:", m.to,
            "sent:", m.date_sent,
        )


if __name__ == "__main__":
    main()
