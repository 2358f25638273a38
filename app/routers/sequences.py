# app/routers/sequences.py
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session

from app.db import get_session
from app.deps import get_dispatcher, require_cron_secret
from app.models import Channel, Lead, User, lead_owner, user_owner
from app.schemas import CancelOut, LeadStartIn, ScheduledOut, TaskOut
from app.services.dispatcher import Dispatcher

log = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sequences", tags=["sequences"], dependencies=[Depends(require_cron_secret)])


def _out(owner_id: str, tasks) -> ScheduledOut:
    return ScheduledOut(
        owner_id=owner_id,
        scheduled=[
            TaskOut(
                id=t.id, type=t.type, owner_id=t.owner_id, status=t.status,
                scheduled_for=t.scheduled_for, attempts=t.attempts,
            )
            for t in tasks
        ],
    )


@router.post("/leads/{lead_id}/start", response_model=ScheduledOut)
def start_lead_sequence(
    lead_id: int,
    body: LeadStartIn | None = None,
    session: Session = Depends(get_session),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    lead = session.get(Lead, lead_id)
    if not lead:
        raise HTTPException(status_code=404, detail="Lead not found")
    owner = lead_owner(lead.id)
    if lead.converted:
        log.info("[sequences] lead %s already converted; nothing scheduled", lead.id)
        return _out(owner, [])

    ctx = dispatcher.context(session)
    tasks = ctx.leads.start(lead)
    if body and body.email_message_id:
        ctx.leads.record_notification(lead.id, Channel.EMAIL, body.email_message_id)
    session.commit()
    for t in tasks:
        session.refresh(t)
    log.info("[sequences] lead %s started; %d task(s) scheduled", lead.id, len(tasks))
    return _out(owner, tasks)


@router.post("/users/{user_id}/onboarding", response_model=ScheduledOut)
def start_onboarding(
    user_id: int,
    session: Session = Depends(get_session),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    user = session.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    tasks = dispatcher.context(session).onboarding.start(user)
    session.commit()
    for t in tasks:
        session.refresh(t)
    log.info("[sequences] onboarding for user %s; %d task(s) scheduled", user.id, len(tasks))
    return _out(user_owner(user.id), tasks)


@router.post("/owners/{owner_id}/cancel", response_model=CancelOut)
def cancel_owner_tasks(
    owner_id: str,
    session: Session = Depends(get_session),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    cancelled = dispatcher.store(session).cancel_all_for_owner(owner_id)
    return CancelOut(owner_id=owner_id, cancelled=cancelled)
