# app/services/sweep.py
"""
One pass over the task queue: claim what is due, run each task, record the
outcome. A task that blows up is marked failed and the batch moves on.
"""
from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from app.models import TaskType
from app.services.dispatcher import Dispatcher
from app.services.sequence import ONBOARDING_TASK_TYPES

log = logging.getLogger(__name__)

_ONBOARDING_TYPES = {t.value for t in ONBOARDING_TASK_TYPES.values()}


@dataclass
class SweepSummary:
    processed: int = 0
    sent_whatsapp: int = 0
    sent_email_2: int = 0
    sent_onboarding: int = 0
    converted: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    duration_ms: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


class BatchFetchError(Exception):
    """The due batch could not be claimed; nothing was processed."""

    def __init__(self, message: str, summary: SweepSummary):
        super().__init__(message)
        self.summary = summary


def run_sweep(session: Session, dispatcher: Dispatcher, limit: Optional[int] = None) -> SweepSummary:
    started = time.monotonic()
    summary = SweepSummary()
    limit = dispatcher.settings.TASKS_PER_RUN if limit is None else limit

    ctx = dispatcher.context(session)
    store = ctx.store

    try:
        tasks = store.claim_due_batch(limit)
    except SQLAlchemyError as e:
        session.rollback()
        log.exception("[sweep] could not claim due tasks")
        summary.errors.append(f"Batch fetch failed: {e.__class__.__name__}")
        summary.duration_ms = int((time.monotonic() - started) * 1000)
        raise BatchFetchError("Failed to fetch due tasks", summary) from e

    log.info("[sweep] claimed %d task(s) (limit=%d)", len(tasks), limit)

    for task in tasks:
        task_id, task_type = task.id, task.type
        summary.processed += 1
        try:
            result = dispatcher.dispatch(task, ctx)
            if result.success:
                store.mark_completed(task_id)
            else:
                store.mark_failed(task_id, result.error or "Unknown error")
        except Exception:
            log.exception("[sweep] task %s (%s) raised", task_id, task_type)
            session.rollback()
            summary.failed += 1
            summary.errors.append(f"Task {task_id} ({task_type}): Unexpected error")
            try:
                store.mark_failed(task_id, "Unexpected error")
            except SQLAlchemyError:
                session.rollback()
                log.exception("[sweep] could not record failure for task %s", task_id)
            continue

        if not result.success:
            summary.failed += 1
            summary.errors.append(f"Task {task_id} ({task_type}): {result.error}")
            continue

        if result.converted:
            summary.converted += 1
        if result.sent_whatsapp:
            summary.sent_whatsapp += 1
        if result.sent_email and task_type == TaskType.SEND_EMAIL_2.value:
            summary.sent_email_2 += 1
        if result.sent_email and task_type in _ONBOARDING_TYPES:
            summary.sent_onboarding += 1
        if not (result.sent_email or result.sent_whatsapp or result.converted):
            summary.skipped += 1

    summary.duration_ms = int((time.monotonic() - started) * 1000)
    log.info(
        "[sweep] done processed=%d whatsapp=%d email_2=%d onboarding=%d converted=%d skipped=%d failed=%d in %dms",
        summary.processed, summary.sent_whatsapp, summary.sent_email_2, summary.sent_onboarding,
        summary.converted, summary.skipped, summary.failed, summary.duration_ms,
    )
    return summary
