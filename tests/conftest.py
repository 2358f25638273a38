# tests/conftest.py
"""
Shared fixtures.

Every test gets its own file-backed SQLite database (so the conversion checker,
which opens its own connection, sees what the test committed), a fixed clock,
recording fakes for the two channels, and a TestClient wired to all of it.
"""
from __future__ import annotations

import os
import time
from datetime import datetime, timedelta, timezone
from typing import List, Optional

# before any app import: keep the real app DB out of the way
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, create_engine

from app.config import settings as app_settings
from app.db import create_db_and_tables, get_session
from app.models import Lead, ScheduledTask, TaskType, User
from app.services.conversion import Conversion, ConversionChecker
from app.services.dispatcher import Dispatcher
from app.services.senders import SendResult
from app.services.task_store import TaskStore

CRON_SECRET = "test-cron-secret"
WEBHOOK_SECRET = "test-webhook-secret"
T0 = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


# ---------- fakes ----------


class FixedClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kw) -> datetime:
        self.now = self.now + timedelta(**kw)
        return self.now


class FakeEmailSender:
    def __init__(self):
        self.calls: List[dict] = []
        self.fail_with: Optional[str] = None
        self.raise_on: Optional[str] = None
        self.slow_on: Optional[str] = None
        self.delay = 0.0

    def send(self, to, subject, text, html=None) -> SendResult:
        if self.raise_on and to == self.raise_on:
            raise RuntimeError("boom")
        if self.slow_on and to == self.slow_on:
            time.sleep(self.delay)
            return SendResult(ok=True, message_id="late")
        self.calls.append({"to": to, "subject": subject, "text": text})
        if self.fail_with:
            return SendResult(ok=False, error=self.fail_with)
        return SendResult(ok=True, message_id=f"em-{len(self.calls)}")


class FakeWhatsAppSender:
    def __init__(self):
        self.configured = True
        self.calls: List[dict] = []
        self.fail_with: Optional[str] = None

    def send(self, to, body) -> SendResult:
        self.calls.append({"to": to, "body": body})
        if self.fail_with:
            return SendResult(ok=False, error=self.fail_with)
        return SendResult(ok=True, message_id=f"wa-{len(self.calls)}")


class FakeConversionChecker:
    def __init__(self, converted: Optional[dict] = None, delay: float = 0.0):
        self.converted = dict(converted or {})
        self.delay = delay
        self.calls: List[int] = []

    def check(self, lead_id: int) -> Conversion:
        self.calls.append(lead_id)
        if self.delay:
            time.sleep(self.delay)
        if lead_id in self.converted:
            return Conversion(converted=True, user_id=self.converted[lead_id])
        return Conversion(converted=False)


# ---------- fixtures ----------


@pytest.fixture
def settings(monkeypatch):
    overrides = {
        "CRON_SECRET": CRON_SECRET,
        "EMAIL_WEBHOOK_SECRET": WEBHOOK_SECRET,
        "SITE_NAME": "Arena",
        "APP_BASE_URL": "https://arena.example.com",
        "TASKS_PER_RUN": 20,
        "TASK_MAX_ATTEMPTS": 1,
        "RETRY_BACKOFF_MINUTES": 15,
        "EMAIL_2_DELAY_HOURS": 24,
        "WHATSAPP_FINAL_DELAY_HOURS": 24,
        "EMAIL_CHECK_DELAY_HOURS": 24,
        "SCHEDULE_EMAIL_CHECK": False,
        "ONBOARDING_EMAIL_2_DELAY_HOURS": 24,
        "ONBOARDING_EMAIL_3_DELAY_HOURS": 72,
        "SEND_TIMEOUT_SECONDS": 5,
        "CONVERSION_TIMEOUT_SECONDS": 5,
        "EMAIL_DRY_RUN": True,
        "WHATSAPP_DRY_RUN": False,
        "DEFAULT_PHONE_REGION": "BR",
    }
    for key, value in overrides.items():
        monkeypatch.setattr(app_settings, key, value)
    return app_settings


@pytest.fixture
def engine(tmp_path):
    eng = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    create_db_and_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def email_sender():
    return FakeEmailSender()


@pytest.fixture
def whatsapp_sender():
    return FakeWhatsAppSender()


@pytest.fixture
def dispatcher(settings, engine, email_sender, whatsapp_sender, clock):
    return Dispatcher(settings, email_sender, whatsapp_sender, ConversionChecker(engine), clock=clock)


@pytest.fixture
def store(session, settings, clock):
    return TaskStore(
        session,
        default_max_attempts=settings.TASK_MAX_ATTEMPTS,
        backoff_minutes=settings.RETRY_BACKOFF_MINUTES,
        clock=clock,
    )


@pytest.fixture
def client(engine, dispatcher):
    from app.main import app

    def _session_override():
        with Session(engine) as s:
            yield s

    app.dependency_overrides[get_session] = _session_override
    app.state.dispatcher = dispatcher
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
        app.state.dispatcher = None


@pytest.fixture
def auth():
    return {"Authorization": f"Bearer {CRON_SECRET}"}


# ---------- factories ----------


@pytest.fixture
def make_lead(session):
    def _make(email="ana@example.com", name="Ana Souza", phone=None, step=1, **kw) -> Lead:
        lead = Lead(email=email, name=name, phone=phone, sequence_step=step, email_1_sent=step >= 1, **kw)
        session.add(lead)
        session.commit()
        session.refresh(lead)
        return lead
    return _make


@pytest.fixture
def make_user(session):
    def _make(email="bruno@example.com", name="Bruno Lima", **kw) -> User:
        user = User(email=email, name=name, **kw)
        session.add(user)
        session.commit()
        session.refresh(user)
        return user
    return _make


@pytest.fixture
def enqueue(store, clock):
    def _enqueue(type: TaskType, owner_id: Optional[str], payload=None, at: Optional[datetime] = None) -> ScheduledTask:
        return store.enqueue(type, owner_id, payload, at or clock())
    return _enqueue

