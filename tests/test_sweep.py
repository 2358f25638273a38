from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import select

from app.models import Lead, ScheduledTask, TaskStatus, TaskType, as_utc, lead_owner, user_owner
from app.services.dispatcher import HANDLERS, Dispatcher
from app.services.sweep import BatchFetchError, run_sweep
from app.services.task_store import TaskStore

from conftest import FakeConversionChecker


def test_every_task_type_has_a_handler():
    assert set(HANDLERS) == set(TaskType)


def test_empty_queue(session, dispatcher):
    summary = run_sweep(session, dispatcher)
    assert summary.processed == 0
    assert summary.errors == []
    assert summary.duration_ms >= 0


def test_one_crashing_task_does_not_abort_the_batch(session, dispatcher, enqueue, make_user, email_sender, clock):
    tasks = []
    for i in range(1, 21):
        user = make_user(email=f"u{i}@example.com", name=f"User {i}")
        tasks.append(enqueue(
            TaskType.SEND_ONBOARDING_EMAIL_1, user_owner(user.id),
            {"user_id": user.id}, clock() - timedelta(minutes=30 - i),
        ))
    email_sender.raise_on = "u7@example.com"

    summary = run_sweep(session, dispatcher)

    assert summary.processed == 20
    assert summary.failed == 1
    assert summary.sent_onboarding == 19
    assert summary.errors == [f"Task {tasks[6].id} (send_onboarding_email_1): Unexpected error"]

    session.expire_all()
    for i, task in enumerate(tasks, start=1):
        row = session.get(ScheduledTask, task.id)
        if i == 7:
            assert row.status == TaskStatus.FAILED.value
            assert row.last_error == "Unexpected error"
        else:
            assert row.status == TaskStatus.COMPLETED.value


def test_batch_is_capped_at_tasks_per_run(session, dispatcher, enqueue):
    for _ in range(25):
        enqueue(TaskType.CLEANUP, None)

    assert run_sweep(session, dispatcher).processed == 20
    assert run_sweep(session, dispatcher).processed == 5


def test_explicit_limit(session, dispatcher, enqueue):
    for _ in range(5):
        enqueue(TaskType.CLEANUP, None)
    assert run_sweep(session, dispatcher, limit=2).processed == 2


def test_future_tasks_are_left_alone(session, dispatcher, enqueue, clock):
    task = enqueue(TaskType.CLEANUP, None, None, clock() + timedelta(minutes=1))
    assert run_sweep(session, dispatcher).processed == 0
    session.expire_all()
    assert session.get(ScheduledTask, task.id).status == TaskStatus.PENDING.value


def test_reserved_types_complete_as_no_ops(session, dispatcher, enqueue, email_sender, whatsapp_sender):
    a = enqueue(TaskType.SEND_REMINDER, lead_owner(1))
    b = enqueue(TaskType.CLEANUP, None)

    summary = run_sweep(session, dispatcher)

    assert summary.processed == 2
    assert summary.skipped == 2
    assert email_sender.calls == [] and whatsapp_sender.calls == []
    session.expire_all()
    assert session.get(ScheduledTask, a.id).status == TaskStatus.COMPLETED.value
    assert session.get(ScheduledTask, b.id).status == TaskStatus.COMPLETED.value


def test_unknown_type_fails_with_descriptive_error(session, dispatcher, clock):
    task = ScheduledTask(type="send_fax", owner_id=lead_owner(1), payload={}, scheduled_for=clock())
    session.add(task)
    session.commit()

    summary = run_sweep(session, dispatcher)

    assert summary.failed == 1
    session.expire_all()
    row = session.get(ScheduledTask, task.id)
    assert row.status == TaskStatus.FAILED.value
    assert row.last_error == "Unknown task type: send_fax"


def test_slow_conversion_check_times_out(session, settings, engine, email_sender, whatsapp_sender, clock, enqueue, make_lead, monkeypatch):
    monkeypatch.setattr(settings, "CONVERSION_TIMEOUT_SECONDS", 0.1)
    slow = Dispatcher(settings, email_sender, whatsapp_sender, FakeConversionChecker(delay=1.0), clock=clock)
    lead = make_lead()
    task = enqueue(TaskType.SEND_EMAIL_2, lead_owner(lead.id))

    summary = run_sweep(session, slow)

    assert summary.failed == 1
    assert "timed out" in summary.errors[0]
    assert email_sender.calls == []
    session.expire_all()
    assert session.get(ScheduledTask, task.id).status == TaskStatus.FAILED.value


def test_failed_send_is_retried_when_budget_allows(session, dispatcher, settings, make_lead, email_sender, clock, monkeypatch):
    monkeypatch.setattr(settings, "TASK_MAX_ATTEMPTS", 2)
    lead = make_lead()
    task = dispatcher.store(session).enqueue(TaskType.SEND_EMAIL_2, lead_owner(lead.id))
    email_sender.fail_with = "SendGrid HTTP 503"

    summary = run_sweep(session, dispatcher)
    assert summary.failed == 1
    session.expire_all()
    row = session.get(ScheduledTask, task.id)
    assert row.status == TaskStatus.PENDING.value
    assert as_utc(row.scheduled_for) == clock() + timedelta(minutes=15)

    email_sender.fail_with = None
    clock.advance(minutes=15)
    summary = run_sweep(session, dispatcher)

    assert summary.sent_email_2 == 1
    session.expire_all()
    row = session.get(ScheduledTask, task.id)
    assert row.status == TaskStatus.COMPLETED.value
    assert row.attempts == 2


def test_batch_fetch_failure_raises_with_summary(session, dispatcher, monkeypatch):
    def broken(self, limit):
        raise OperationalError("SELECT ...", {}, Exception("database is locked"))

    monkeypatch.setattr(TaskStore, "claim_due_batch", broken)

    with pytest.raises(BatchFetchError) as exc:
        run_sweep(session, dispatcher)

    assert exc.value.summary.processed == 0
    assert exc.value.summary.errors == ["Batch fetch failed: OperationalError"]


def test_slow_send_fails_only_that_task(session, dispatcher, settings, enqueue, make_lead, make_user, email_sender, monkeypatch):
    monkeypatch.setattr(settings, "SEND_TIMEOUT_SECONDS", 0.1)
    email_sender.slow_on = "ana@example.com"
    email_sender.delay = 1.0
    lead = make_lead(phone="+5511987654321")
    user = make_user()
    slow = enqueue(TaskType.SEND_EMAIL_2, lead_owner(lead.id))
    other = enqueue(TaskType.SEND_ONBOARDING_EMAIL_1, user_owner(user.id), {"user_id": user.id})

    summary = run_sweep(session, dispatcher)

    assert summary.processed == 2
    assert summary.failed == 1
    assert summary.sent_email_2 == 0
    assert summary.sent_onboarding == 1
    assert "timed out" in summary.errors[0]

    session.expire_all()
    row = session.get(ScheduledTask, slow.id)
    assert row.status == TaskStatus.FAILED.value
    assert "timed out" in row.last_error
    assert session.get(ScheduledTask, other.id).status == TaskStatus.COMPLETED.value

    lead = session.get(Lead, lead.id)
    assert lead.sequence_step == 1
    assert lead.email_2_sent is False
    assert session.exec(
        select(ScheduledTask).where(ScheduledTask.type == TaskType.SEND_WHATSAPP_FINAL.value)
    ).all() == []
