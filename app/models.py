# app/models.py
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any

from sqlalchemy import Column, DateTime, JSON, Index, UniqueConstraint
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands datetimes back naive; treat those as UTC."""
    if dt is None:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


# ---------- Enums ----------


class TaskType(str, Enum):
    CHECK_EMAIL_OPENED = "check_email_opened"  # legacy fallback
    SEND_EMAIL_2 = "send_email_2"
    SEND_WHATSAPP_FINAL = "send_whatsapp_final"
    SEND_ONBOARDING_EMAIL_1 = "send_onboarding_email_1"  # welcome
    SEND_ONBOARDING_EMAIL_2 = "send_onboarding_email_2"  # engagement (24h)
    SEND_ONBOARDING_EMAIL_3 = "send_onboarding_email_3"  # re-engagement (72h)
    SEND_REMINDER = "send_reminder"
    CLEANUP = "cleanup"


class TaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Channel(str, Enum):
    EMAIL = "email"
    WHATSAPP = "whatsapp"


# ---------- Task queue ----------


class ScheduledTask(SQLModel, table=True):
    __tablename__ = "scheduled_task"
    __table_args__ = (
        Index("ix_scheduled_task_due", "status", "scheduled_for"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    type: str = Field(index=True, max_length=40)
    # lead id or user id; None only for global maintenance tasks
    owner_id: Optional[str] = Field(default=None, index=True, max_length=64)
    payload: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))

    scheduled_for: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    status: str = Field(default=TaskStatus.PENDING.value, max_length=20)
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=1)
    last_error: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))


# ---------- Sequence subjects ----------


class Lead(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    name: str = ""
    email: str = Field(index=True)
    phone: Optional[str] = None
    whatsapp_opted_in: bool = Field(default=False)

    # 0 = waiting, 1 = email 1, 2 = email 2, 3 = whatsapp final
    sequence_step: int = Field(default=0)
    email_1_sent: bool = Field(default=False)
    email_2_sent: bool = Field(default=False)
    whatsapp_sent: bool = Field(default=False)
    whatsapp_sent_at: Optional[datetime] = None

    converted: bool = Field(default=False, index=True)
    converted_at: Optional[datetime] = None
    converted_user_id: Optional[int] = None


class User(SQLModel, table=True):
    """Registered member; the subject of the onboarding sequence."""
    __tablename__ = "app_user"

    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    name: str = ""
    email: str = Field(index=True, unique=True)
    phone: Optional[str] = None

    onboarding_step: int = Field(default=0)
    email_1_sent: bool = Field(default=False)
    email_2_sent: bool = Field(default=False)
    email_3_sent: bool = Field(default=False)


# ---------- Delivery log ----------


class NotificationLog(SQLModel, table=True):
    __tablename__ = "notification_log"
    __table_args__ = (UniqueConstraint("lead_id", "channel", name="uq_notification_lead_channel"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=utcnow)
    lead_id: int = Field(index=True)
    channel: str = Field(max_length=20)
    status: str = Field(default="sent", max_length=20)  # sent | delivered | opened | failed
    external_id: Optional[str] = Field(default=None, index=True)
    opened: bool = Field(default=False)
    opened_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None


# ---------- Task owners ----------
# Leads and users live in different tables, so owner ids carry a kind prefix
# ("lead:12", "user:12") to keep cancellation scoped to one subject.

def lead_owner(lead_id: int) -> str:
    return f"lead:{lead_id}"


def user_owner(user_id: int) -> str:
    return f"user:{user_id}"


def owner_ref(owner_id: Optional[str]) -> tuple[str, Optional[int]]:
    """'lead:12' -> ('lead', 12). Bare numeric ids come back with an empty kind."""
    if not owner_id:
        return "", None
    kind, _, raw = str(owner_id).rpartition(":")
    try:
        return kind, int(raw)
    except ValueError:
        return kind, None
