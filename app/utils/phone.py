# app/utils/phone.py
from typing import Optional

import phonenumbers


def normalize_phone(raw: Optional[str], region: str = "BR") -> Optional[str]:
    """
    Normalize a phone number to E.164 (+5511999999999).
    Numbers without a country code are parsed in `region`.
    Returns None if the number is empty or invalid.
    """
    if not raw or not str(raw).strip():
        return None
    try:
        pn = phonenumbers.parse(str(raw).strip(), region)
    except phonenumbers.NumberParseException:
        return None
    if not phonenumbers.is_possible_number(pn) or not phonenumbers.is_valid_number(pn):
        return None
    return phonenumbers.format_number(pn, phonenumbers.PhoneNumberFormat.E164)


def whatsapp_address(e164: str) -> str:
    """Twilio addresses WhatsApp recipients as 'whatsapp:+E164'."""
    return e164 if e164.startswith("whatsapp:") else f"whatsapp:{e164}"
