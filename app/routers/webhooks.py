# app/routers/webhooks.py
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy import func
from sqlmodel import Session, select

from app.db import get_session
from app.deps import get_dispatcher, require_webhook_secret
from app.models import Channel, Lead, NotificationLog, TaskType, lead_owner, utcnow
from app.schemas import EmailEventIn, EmailEventOut
from app.services.dispatcher import Dispatcher

log = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

_OPENED = {"email.opened", "email.clicked"}
_FAILED = {"email.bounced", "email.complained"}


def _find_log(session: Session, evt: EmailEventIn) -> Optional[NotificationLog]:
    if evt.message_id:
        row = session.exec(
            select(NotificationLog).where(NotificationLog.external_id == evt.message_id)
        ).first()
        if row:
            return row

    lead_id = evt.lead_id
    if lead_id is None and evt.email:
        lead = session.exec(
            select(Lead).where(func.lower(Lead.email) == str(evt.email).lower()).limit(1)
        ).first()
        lead_id = lead.id if lead else None
    if lead_id is None:
        return None

    row = session.exec(
        select(NotificationLog)
        .where(NotificationLog.lead_id == lead_id)
        .where(NotificationLog.channel == Channel.EMAIL.value)
    ).first()
    if row is None and session.get(Lead, lead_id):
        row = NotificationLog(lead_id=lead_id, channel=Channel.EMAIL.value, external_id=evt.message_id)
    return row


@router.post("/email-events", response_model=EmailEventOut, dependencies=[Depends(require_webhook_secret)])
def email_events(
    evt: EmailEventIn,
    session: Session = Depends(get_session),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    row = _find_log(session, evt)
    if row is None:
        log.info("[webhook] %s for unknown message %s; ignored", evt.type, evt.message_id)
        return EmailEventOut(ok=True, event=evt.type)

    cancelled = 0
    if evt.type == "email.delivered":
        if not row.opened:
            row.status = "delivered"
    elif evt.type in _OPENED:
        row.status = "opened"
        row.opened = True
        row.opened_at = row.opened_at or evt.created_at or utcnow()
        cancelled = dispatcher.store(session).cancel_for_owner(
            lead_owner(row.lead_id), TaskType.CHECK_EMAIL_OPENED, commit=False
        )
    elif evt.type in _FAILED:
        row.status = "failed"
    else:
        log.info("[webhook] event %s ignored", evt.type)
        return EmailEventOut(ok=True, event=evt.type, lead_id=row.lead_id)

    session.add(row)
    session.commit()
    log.info("[webhook] %s for lead %s (cancelled=%d)", evt.type, row.lead_id, cancelled)
    return EmailEventOut(ok=True, event=evt.type, lead_id=row.lead_id, cancelled=cancelled)
