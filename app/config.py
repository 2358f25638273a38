# app/config.py
import os
from pathlib import Path

from dotenv import load_dotenv

# load .env into process env vars
ROOT = Path(__file__).resolve().parents[1]
load_dotenv(ROOT / ".env")


def _as_bool(name: str, default: bool = False) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return str(val).strip().lower() in ("1", "true", "yes", "y", "on")


def _as_int(name: str, default: int) -> int:
    try:
        return int(str(os.getenv(name, default)).strip())
    except Exception:
        return default


class Settings:
    # App
    ENV: str = os.getenv("ENV", "dev")
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///data/app.db")

    # Branding / links
    SITE_NAME: str = os.getenv("SITE_NAME", "Arena")
    APP_BASE_URL: str = os.getenv("APP_BASE_URL", "http://localhost:3000").rstrip("/")

    # Cron trigger. Empty secret disables /api/cron/* entirely.
    CRON_SECRET: str = (os.getenv("CRON_SECRET") or "").strip()

    # Sweep / queue
    TASKS_PER_RUN: int = _as_int("TASKS_PER_RUN", 20)
    TASK_MAX_ATTEMPTS: int = _as_int("TASK_MAX_ATTEMPTS", 1)
    RETRY_BACKOFF_MINUTES: int = _as_int("RETRY_BACKOFF_MINUTES", 15)

    # Sequence delays
    EMAIL_2_DELAY_HOURS: int = _as_int("EMAIL_2_DELAY_HOURS", 24)
    WHATSAPP_FINAL_DELAY_HOURS: int = _as_int("WHATSAPP_FINAL_DELAY_HOURS", 24)
    EMAIL_CHECK_DELAY_HOURS: int = _as_int("EMAIL_CHECK_DELAY_HOURS", 24)
    SCHEDULE_EMAIL_CHECK: bool = _as_bool("SCHEDULE_EMAIL_CHECK", False)
    ONBOARDING_EMAIL_2_DELAY_HOURS: int = _as_int("ONBOARDING_EMAIL_2_DELAY_HOURS", 24)
    ONBOARDING_EMAIL_3_DELAY_HOURS: int = _as_int("ONBOARDING_EMAIL_3_DELAY_HOURS", 72)

    # External call limits
    SEND_TIMEOUT_SECONDS: int = _as_int("SEND_TIMEOUT_SECONDS", 20)
    CONVERSION_TIMEOUT_SECONDS: int = _as_int("CONVERSION_TIMEOUT_SECONDS", 10)

    # Email
    EMAIL_DRY_RUN: bool = _as_bool("EMAIL_DRY_RUN", True)
    SENDGRID_API_KEY: str = os.getenv("SENDGRID_API_KEY", "").strip()
    SMTP_HOST: str = os.getenv("SMTP_HOST", "")
    SMTP_PORT: int = _as_int("SMTP_PORT", 587)
    SMTP_USERNAME: str = os.getenv("SMTP_USERNAME", "")
    SMTP_PASSWORD: str = os.getenv("SMTP_PASSWORD", "")
    FROM_EMAIL: str = os.getenv("FROM_EMAIL", "no-reply@example.com")
    FROM_NAME: str = os.getenv("FROM_NAME", "Arena")
    EMAIL_WEBHOOK_SECRET: str = (os.getenv("EMAIL_WEBHOOK_SECRET") or "").strip()

    # WhatsApp (Twilio)
    TWILIO_ACCOUNT_SID: str = os.getenv("TWILIO_ACCOUNT_SID", "").strip()
    TWILIO_AUTH_TOKEN: str = os.getenv("TWILIO_AUTH_TOKEN", "").strip()
    TWILIO_WHATSAPP_FROM: str = os.getenv("TWILIO_WHATSAPP_FROM", "").strip()
    WHATSAPP_DRY_RUN: bool = _as_bool("WHATSAPP_DRY_RUN", False)
    DEFAULT_PHONE_REGION: str = os.getenv("DEFAULT_PHONE_REGION", "BR").strip().upper()

    # Logging
    LOG_DIR: str = os.getenv("LOG_DIR", str(ROOT / "logs"))


# instantiate settings FIRST
settings = Settings()

