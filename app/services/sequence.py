# app/services/sequence.py
"""
State machines for the lead follow-up sequence and the user onboarding
sequence.

Only these classes write `sequence_step`, `onboarding_step` and the `*_sent`
flags. Steps only move forward and flags are only ever set, never cleared.
Nothing here commits: changes are staged on the sweep's session and land
together with the task's completion.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlmodel import Session, select

from app.config import Settings
from app.models import (
    Channel, Lead, NotificationLog, ScheduledTask, TaskType, User, lead_owner, user_owner, utcnow,
)
from app.services.task_store import TaskStore

log = logging.getLogger(__name__)

LEAD_FINAL_STEP = 3
ONBOARDING_STEPS = (1, 2, 3)

ONBOARDING_TASK_TYPES = {
    1: TaskType.SEND_ONBOARDING_EMAIL_1,
    2: TaskType.SEND_ONBOARDING_EMAIL_2,
    3: TaskType.SEND_ONBOARDING_EMAIL_3,
}


class LeadSequence:
    def __init__(self, session: Session, store: TaskStore, settings: Settings, clock: Callable[[], datetime] = utcnow):
        self.session = session
        self.store = store
        self.settings = settings
        self.clock = clock

    # ---------- transitions ----------

    def advance(self, lead: Lead, step: int) -> None:
        if step > (lead.sequence_step or 0):
            log.info("[sequence] lead %s step %s -> %s", lead.id, lead.sequence_step, step)
            lead.sequence_step = step
            self.session.add(lead)

    def record_email_1_sent(self, lead: Lead) -> None:
        lead.email_1_sent = True
        self.advance(lead, 1)
        self.session.add(lead)

    def record_email_2_sent(self, lead: Lead) -> None:
        lead.email_2_sent = True
        self.advance(lead, 2)
        self.session.add(lead)

    def record_whatsapp_sent(self, lead: Lead, *, final: bool = True) -> None:
        lead.whatsapp_sent = True
        lead.whatsapp_sent_at = self.clock()
        if final:
            self.advance(lead, LEAD_FINAL_STEP)
        self.session.add(lead)

    def finish_without_whatsapp(self, lead: Lead) -> None:
        self.advance(lead, LEAD_FINAL_STEP)

    def mark_converted(self, lead: Lead, user_id: Optional[int]) -> int:
        """Flag the lead converted and cancel the rest of its sequence."""
        if not lead.converted:
            lead.converted = True
            lead.converted_at = self.clock()
        if user_id and not lead.converted_user_id:
            lead.converted_user_id = user_id
        self.session.add(lead)
        cancelled = self.store.cancel_all_for_owner(lead_owner(lead.id), commit=False)
        log.info("[sequence] lead %s converted (user=%s); %d pending task(s) cancelled", lead.id, user_id, cancelled)
        return cancelled

    # ---------- scheduling ----------

    def start(self, lead: Lead) -> List[ScheduledTask]:
        """
        Called once email 1 went out at lead capture: records step 1 and
        schedules email 2 (plus the legacy open check when enabled).
        """
        self.record_email_1_sent(lead)
        now = self.clock()
        owner = lead_owner(lead.id)
        tasks: List[ScheduledTask] = []

        if not lead.email_2_sent and not self.store.has_pending(owner, TaskType.SEND_EMAIL_2):
            tasks.append(self.store.enqueue(
                TaskType.SEND_EMAIL_2, owner,
                {"email": lead.email, "lead_name": lead.name},
                now + timedelta(hours=self.settings.EMAIL_2_DELAY_HOURS),
                commit=False,
            ))

        if self.settings.SCHEDULE_EMAIL_CHECK and not self.store.has_pending(owner, TaskType.CHECK_EMAIL_OPENED):
            tasks.append(self.store.enqueue(
                TaskType.CHECK_EMAIL_OPENED, owner,
                {"email": lead.email, "lead_name": lead.name},
                now + timedelta(hours=self.settings.EMAIL_CHECK_DELAY_HOURS),
                commit=False,
            ))
        return tasks

    def schedule_whatsapp_final(self, lead: Lead) -> Optional[ScheduledTask]:
        owner = lead_owner(lead.id)
        if self.store.has_pending(owner, TaskType.SEND_WHATSAPP_FINAL):
            return None
        return self.store.enqueue(
            TaskType.SEND_WHATSAPP_FINAL, owner,
            {"email": lead.email, "lead_name": lead.name, "phone": lead.phone},
            self.clock() + timedelta(hours=self.settings.WHATSAPP_FINAL_DELAY_HOURS),
            commit=False,
        )

    # ---------- delivery log ----------

    def email_opened(self, lead_id: int) -> bool:
        row = self.session.exec(
            select(NotificationLog)
            .where(NotificationLog.lead_id == lead_id)
            .where(NotificationLog.channel == Channel.EMAIL.value)
        ).first()
        return bool(row and row.opened)

    def record_notification(self, lead_id: int, channel: Channel, external_id: Optional[str]) -> NotificationLog:
        row = self.session.exec(
            select(NotificationLog)
            .where(NotificationLog.lead_id == lead_id)
            .where(NotificationLog.channel == channel.value)
        ).first()
        if row is None:
            row = NotificationLog(lead_id=lead_id, channel=channel.value)
        row.status = "sent"
        row.external_id = external_id
        row.sent_at = self.clock()
        self.session.add(row)
        return row


class OnboardingSequence:
    def __init__(self, session: Session, store: TaskStore, settings: Settings, clock: Callable[[], datetime] = utcnow):
        self.session = session
        self.store = store
        self.settings = settings
        self.clock = clock

    @staticmethod
    def already_sent(user: User, step: int) -> bool:
        return bool(getattr(user, f"email_{step}_sent"))

    def record_sent(self, user: User, step: int) -> None:
        setattr(user, f"email_{step}_sent", True)
        if step > (user.onboarding_step or 0):
            user.onboarding_step = step
        self.session.add(user)
        log.info("[onboarding] user %s email %s recorded", user.id, step)

    def start(self, user: User) -> List[ScheduledTask]:
        now = self.clock()
        delays = {
            1: timedelta(0),
            2: timedelta(hours=self.settings.ONBOARDING_EMAIL_2_DELAY_HOURS),
            3: timedelta(hours=self.settings.ONBOARDING_EMAIL_3_DELAY_HOURS),
        }
        payload = {"user_id": user.id, "email": user.email, "name": user.name}
        owner = user_owner(user.id)

        tasks: List[ScheduledTask] = []
        for step in ONBOARDING_STEPS:
            task_type = ONBOARDING_TASK_TYPES[step]
            if self.already_sent(user, step) or self.store.has_pending(owner, task_type):
                continue
            tasks.append(self.store.enqueue(task_type, owner, payload, now + delays[step], commit=False))
        return tasks
