# app/services/handlers.py
"""
One handler per task type.

Every handler checks the cheap things first (subject exists, not converted,
step not already done) and only then calls a channel sender.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from sqlmodel import Session

from app.config import Settings
from app.models import Channel, Lead, ScheduledTask, User, owner_ref, utcnow
from app.services.conversion import Conversion, ConversionChecker
from app.services.email import EmailSender, follow_up_email, onboarding_email, registration_url
from app.services.guard import CallTimeout, call_with_timeout
from app.services.senders import SendResult
from app.services.sequence import LeadSequence, OnboardingSequence
from app.services.task_store import TaskStore
from app.services.whatsapp import WhatsAppSender, final_whatsapp_body, nudge_whatsapp_body
from app.utils.phone import normalize_phone

log = logging.getLogger(__name__)


@dataclass
class TaskResult:
    success: bool
    sent_email: bool = False
    sent_whatsapp: bool = False
    converted: bool = False
    skipped: bool = False
    error: Optional[str] = None

    @classmethod
    def skip(cls) -> "TaskResult":
        return cls(success=True, skipped=True)

    @classmethod
    def failure(cls, error: str) -> "TaskResult":
        return cls(success=False, error=error)

    def as_dict(self) -> dict:
        return {
            "success": self.success,
            "sentEmail": self.sent_email,
            "sentWhatsApp": self.sent_whatsapp,
            "converted": self.converted,
            "skipped": self.skipped,
            "error": self.error,
        }


@dataclass
class HandlerContext:
    session: Session
    store: TaskStore
    leads: LeadSequence
    onboarding: OnboardingSequence
    email: EmailSender
    whatsapp: WhatsAppSender
    conversion: ConversionChecker
    settings: Settings
    clock: Callable[[], datetime] = field(default=utcnow)

    # ---------- guarded external calls ----------

    def check_conversion(self, lead_id: int) -> Conversion:
        return call_with_timeout(
            self.conversion.check, lead_id,
            timeout=self.settings.CONVERSION_TIMEOUT_SECONDS,
            label=f"conversion check lead={lead_id}",
        )

    def send_email(self, to: str, subject: str, text: str, html: Optional[str] = None) -> SendResult:
        try:
            return call_with_timeout(
                self.email.send, to, subject, text, html,
                timeout=self.settings.SEND_TIMEOUT_SECONDS,
                label=f"email to={to}",
            )
        except CallTimeout as e:
            return SendResult(ok=False, error=str(e))

    def send_whatsapp(self, to: str, body: str) -> SendResult:
        try:
            return call_with_timeout(
                self.whatsapp.send, to, body,
                timeout=self.settings.SEND_TIMEOUT_SECONDS,
                label=f"whatsapp to={to}",
            )
        except CallTimeout as e:
            return SendResult(ok=False, error=str(e))


Handler = Callable[[ScheduledTask, HandlerContext], TaskResult]


# ---------- helpers ----------


def _load_lead(task: ScheduledTask, ctx: HandlerContext) -> Optional[Lead]:
    _, lead_id = owner_ref(task.owner_id)
    if lead_id is None:
        log.warning("[handlers] task %s (%s) has no lead id", task.id, task.type)
        return None
    lead = ctx.session.get(Lead, lead_id)
    if lead is None:
        log.warning("[handlers] lead %s not found for task %s", lead_id, task.id)
    return lead


def _valid_phone(ctx: HandlerContext, lead: Lead) -> bool:
    return normalize_phone(lead.phone, ctx.settings.DEFAULT_PHONE_REGION) is not None


def _converted(ctx: HandlerContext, lead: Lead) -> Optional[TaskResult]:
    """Stop the sequence if the lead has registered in the meantime."""
    try:
        conv = ctx.check_conversion(lead.id)
    except CallTimeout as e:
        return TaskResult.failure(str(e))
    if not conv.converted:
        return None
    ctx.leads.mark_converted(lead, conv.user_id)
    return TaskResult(success=True, converted=True)


# ---------- lead sequence ----------


def handle_send_email_2(task: ScheduledTask, ctx: HandlerContext) -> TaskResult:
    lead = _load_lead(task, ctx)
    if lead is None:
        return TaskResult.skip()

    stopped = _converted(ctx, lead)
    if stopped:
        return stopped

    if lead.email_2_sent or lead.sequence_step >= 2:
        log.info("[handlers] lead %s already past email 2 (step=%s); skipping", lead.id, lead.sequence_step)
        return TaskResult.skip()

    subject, text, html = follow_up_email(ctx.settings, lead.name, lead.email)
    res = ctx.send_email(lead.email, subject, text, html)
    if not res.ok:
        return TaskResult.failure(res.error or "Email 2 send failed")

    ctx.leads.record_email_2_sent(lead)
    ctx.leads.record_notification(lead.id, Channel.EMAIL, res.message_id)
    if lead.phone:
        ctx.leads.schedule_whatsapp_final(lead)
    log.info("[handlers] email 2 sent to lead %s", lead.id)
    return TaskResult(success=True, sent_email=True)


def handle_send_whatsapp_final(task: ScheduledTask, ctx: HandlerContext) -> TaskResult:
    lead = _load_lead(task, ctx)
    if lead is None:
        return TaskResult.skip()

    stopped = _converted(ctx, lead)
    if stopped:
        return stopped

    if lead.sequence_step >= 3:
        log.info("[handlers] lead %s already finished (step=%s); skipping", lead.id, lead.sequence_step)
        return TaskResult.skip()

    if lead.whatsapp_sent:
        # the open-check nudge already reached this lead
        log.info("[handlers] lead %s already got a WhatsApp; closing sequence", lead.id)
        ctx.leads.finish_without_whatsapp(lead)
        return TaskResult.skip()

    if not _valid_phone(ctx, lead):
        log.info("[handlers] lead %s has no usable phone; closing sequence without WhatsApp", lead.id)
        ctx.leads.finish_without_whatsapp(lead)
        return TaskResult.skip()

    if not ctx.whatsapp.configured:
        log.warning("[handlers] WhatsApp not configured; closing lead %s sequence without sending", lead.id)
        ctx.leads.finish_without_whatsapp(lead)
        return TaskResult.skip()

    body = final_whatsapp_body(ctx.settings.SITE_NAME, lead.name, registration_url(ctx.settings, lead.email))
    res = ctx.send_whatsapp(lead.phone, body)
    if not res.ok:
        return TaskResult.failure(res.error or "WhatsApp send failed")

    ctx.leads.record_whatsapp_sent(lead)
    ctx.leads.record_notification(lead.id, Channel.WHATSAPP, res.message_id)
    log.info("[handlers] final WhatsApp sent to lead %s", lead.id)
    return TaskResult(success=True, sent_whatsapp=True)


def handle_check_email_opened(task: ScheduledTask, ctx: HandlerContext) -> TaskResult:
    lead = _load_lead(task, ctx)
    if lead is None:
        return TaskResult.skip()

    stopped = _converted(ctx, lead)
    if stopped:
        return stopped

    if ctx.leads.email_opened(lead.id):
        log.info("[handlers] lead %s opened the email; no WhatsApp", lead.id)
        return TaskResult.skip()

    if lead.whatsapp_sent:
        return TaskResult.skip()

    if not lead.whatsapp_opted_in or not _valid_phone(ctx, lead):
        log.info("[handlers] lead %s has no phone or did not opt into WhatsApp", lead.id)
        return TaskResult.skip()

    if not ctx.whatsapp.configured:
        log.warning("[handlers] WhatsApp not configured; skipping nudge for lead %s", lead.id)
        return TaskResult.skip()

    body = nudge_whatsapp_body(ctx.settings.SITE_NAME, lead.name, registration_url(ctx.settings, lead.email))
    res = ctx.send_whatsapp(lead.phone, body)
    if not res.ok:
        return TaskResult.failure(res.error or "WhatsApp send failed")

    ctx.leads.record_whatsapp_sent(lead, final=False)
    ctx.leads.record_notification(lead.id, Channel.WHATSAPP, res.message_id)
    return TaskResult(success=True, sent_whatsapp=True)


# ---------- onboarding ----------


def _onboarding_handler(step: int) -> Handler:
    def handle(task: ScheduledTask, ctx: HandlerContext) -> TaskResult:
        payload = task.payload or {}
        user_id = payload.get("user_id")
        if user_id is None:
            user_id = owner_ref(task.owner_id)[1]
        try:
            user = ctx.session.get(User, int(user_id)) if user_id is not None else None
        except (TypeError, ValueError):
            user = None
        if user is None:
            log.warning("[onboarding] user %s not found for task %s", user_id, task.id)
            return TaskResult.skip()

        if ctx.onboarding.already_sent(user, step):
            log.info("[onboarding] email %s already sent to user %s; skipping", step, user.id)
            return TaskResult.skip()

        to = user.email or payload.get("email")
        if not to:
            return TaskResult.skip()

        subject, text, html = onboarding_email(ctx.settings, step, user.name or payload.get("name") or "")
        res = ctx.send_email(to, subject, text, html)
        if not res.ok:
            return TaskResult.failure(res.error or f"Onboarding email {step} send failed")

        ctx.onboarding.record_sent(user, step)
        return TaskResult(success=True, sent_email=True)

    handle.__name__ = f"handle_send_onboarding_email_{step}"
    return handle


handle_send_onboarding_email_1 = _onboarding_handler(1)
handle_send_onboarding_email_2 = _onboarding_handler(2)
handle_send_onboarding_email_3 = _onboarding_handler(3)


# ---------- reserved ----------


def handle_noop(task: ScheduledTask, ctx: HandlerContext) -> TaskResult:
    log.info("[handlers] %s has no handler yet; completing task %s as a no-op", task.type, task.id)
    return TaskResult.skip()
