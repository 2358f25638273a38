# app/services/task_store.py
"""
Durable queue of scheduled tasks on top of the `scheduled_task` table.

Claiming is a compare-and-swap: one UPDATE ... WHERE status = 'pending' that
bumps `attempts` and flips the row to `processing`. Two overlapping sweeps can
both *see* a due task, but only one UPDATE matches it; the loser skips it.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func, update
from sqlmodel import Session, select

from app.models import ScheduledTask, TaskStatus, TaskType, as_utc, utcnow

log = logging.getLogger(__name__)


class TaskStore:
    def __init__(
        self,
        session: Session,
        *,
        default_max_attempts: int = 1,
        backoff_minutes: int = 15,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.default_max_attempts = max(1, default_max_attempts)
        self.backoff_minutes = max(0, backoff_minutes)
        self.clock = clock

    # ------------------------------------------------------------------ create

    def enqueue(
        self,
        type: TaskType,
        owner_id: Optional[str],
        payload: Optional[Dict[str, Any]] = None,
        scheduled_for: Optional[datetime] = None,
        *,
        max_attempts: Optional[int] = None,
        commit: bool = True,
    ) -> ScheduledTask:
        now = self.clock()
        task = ScheduledTask(
            type=TaskType(type).value,
            owner_id=str(owner_id) if owner_id is not None else None,
            payload=dict(payload or {}),
            scheduled_for=as_utc(scheduled_for).astimezone(timezone.utc) if scheduled_for else now,
            status=TaskStatus.PENDING.value,
            attempts=0,
            max_attempts=max_attempts or self.default_max_attempts,
            created_at=now,
            updated_at=now,
        )
        self.session.add(task)
        if commit:
            self.session.commit()
            self.session.refresh(task)
        else:
            self.session.flush()
        log.info("[task_store] enqueued %s owner=%s for %s", task.type, task.owner_id, task.scheduled_for)
        return task

    # ------------------------------------------------------------------- claim

    def due_ids(self, limit: int) -> List[int]:
        stmt = (
            select(ScheduledTask.id)
            .where(ScheduledTask.status == TaskStatus.PENDING.value)
            .where(ScheduledTask.scheduled_for <= self.clock())
            .order_by(ScheduledTask.scheduled_for.asc(), ScheduledTask.id.asc())
            .limit(max(0, limit))
            .with_for_update(skip_locked=True)
        )
        return list(self.session.exec(stmt).all())

    def try_claim(self, task_id: int) -> bool:
        """pending -> processing with attempts += 1, in one conditional UPDATE."""
        stmt = (
            update(ScheduledTask)
            .where(ScheduledTask.id == task_id)
            .where(ScheduledTask.status == TaskStatus.PENDING.value)
            .values(
                status=TaskStatus.PROCESSING.value,
                attempts=ScheduledTask.attempts + 1,
                updated_at=self.clock(),
            )
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount == 1

    def claim_due_batch(self, limit: int) -> List[ScheduledTask]:
        candidates = self.due_ids(limit)
        if not candidates:
            self.session.commit()
            return []

        claimed = [task_id for task_id in candidates if self.try_claim(task_id)]
        self.session.commit()

        skipped = len(candidates) - len(claimed)
        if skipped:
            log.info("[task_store] %d task(s) already claimed by another sweep", skipped)
        if not claimed:
            return []

        return list(
            self.session.exec(
                select(ScheduledTask)
                .where(ScheduledTask.id.in_(claimed))
                .order_by(ScheduledTask.scheduled_for.asc(), ScheduledTask.id.asc())
                .execution_options(populate_existing=True)
            ).all()
        )

    # ---------------------------------------------------------------- outcome

    def mark_completed(self, task_id: int, *, commit: bool = True) -> bool:
        now = self.clock()
        stmt = (
            update(ScheduledTask)
            .where(ScheduledTask.id == task_id)
            .where(ScheduledTask.status == TaskStatus.PROCESSING.value)
            .values(status=TaskStatus.COMPLETED.value, completed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        ok = self.session.execute(stmt).rowcount == 1
        if commit:
            self.session.commit()
        if not ok:
            log.warning("[task_store] task %s was not processing; completion ignored", task_id)
        return ok

    def mark_failed(self, task_id: int, error: str, *, commit: bool = True) -> Optional[str]:
        """
        Record a failure. While the retry budget lasts the task goes back to
        pending with exponential backoff; afterwards it is terminally failed.
        Returns the resulting status, or None if the task was not processing.
        """
        task = self.session.get(ScheduledTask, task_id, populate_existing=True)
        if task is None or task.status != TaskStatus.PROCESSING.value:
            log.warning("[task_store] task %s was not processing; failure ignored", task_id)
            if commit:
                self.session.commit()
            return None

        now = self.clock()
        error = (error or "Unknown error")[:500]
        task.last_error = error
        task.updated_at = now

        if task.attempts < task.max_attempts:
            delay = timedelta(minutes=self.backoff_minutes * (2 ** max(0, task.attempts - 1)))
            task.status = TaskStatus.PENDING.value
            task.scheduled_for = now + delay
            log.warning(
                "[task_store] task %s back to pending (%d/%d attempts), retry at %s: %s",
                task_id, task.attempts, task.max_attempts, task.scheduled_for, error,
            )
        else:
            task.status = TaskStatus.FAILED.value
            task.completed_at = now
            log.error("[task_store] task %s failed after %d attempt(s): %s", task_id, task.attempts, error)

        self.session.add(task)
        if commit:
            self.session.commit()
        return task.status

    # ------------------------------------------------------------ cancellation

    def cancel_all_for_owner(self, owner_id: str, *, commit: bool = True) -> int:
        return self._cancel(owner_id, None, commit=commit)

    def cancel_for_owner(self, owner_id: str, type: TaskType, *, commit: bool = True) -> int:
        return self._cancel(owner_id, TaskType(type), commit=commit)

    def _cancel(self, owner_id: str, type: Optional[TaskType], *, commit: bool) -> int:
        now = self.clock()
        stmt = (
            update(ScheduledTask)
            .where(ScheduledTask.owner_id == str(owner_id))
            .where(ScheduledTask.status == TaskStatus.PENDING.value)
        )
        if type is not None:
            stmt = stmt.where(ScheduledTask.type == type.value)
        stmt = stmt.values(
            status=TaskStatus.CANCELLED.value, completed_at=now, updated_at=now
        ).execution_options(synchronize_session=False)

        cancelled = self.session.execute(stmt).rowcount or 0
        if commit:
            self.session.commit()
        if cancelled:
            log.info(
                "[task_store] cancelled %d pending task(s) for owner %s%s",
                cancelled, owner_id, f" ({type.value})" if type else "",
            )
        return cancelled

    # ----------------------------------------------------------------- queries

    def has_pending(self, owner_id: str, type: TaskType) -> bool:
        stmt = (
            select(ScheduledTask.id)
            .where(ScheduledTask.owner_id == str(owner_id))
            .where(ScheduledTask.type == TaskType(type).value)
            .where(ScheduledTask.status == TaskStatus.PENDING.value)
            .limit(1)
        )
        return self.session.exec(stmt).first() is not None

    def for_owner(self, owner_id: str) -> List[ScheduledTask]:
        return list(
            self.session.exec(
                select(ScheduledTask)
                .where(ScheduledTask.owner_id == str(owner_id))
                .order_by(ScheduledTask.id.asc())
            ).all()
        )

    def stats(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in TaskStatus}
        rows = self.session.exec(
            select(ScheduledTask.status, func.count(ScheduledTask.id)).group_by(ScheduledTask.status)
        ).all()
        for status, n in rows:
            if status in counts:
                counts[status] = n
        return counts
