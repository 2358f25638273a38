from datetime import timedelta

from sqlmodel import Session

from app.models import ScheduledTask, TaskStatus, TaskType, as_utc, lead_owner
from app.services.task_store import TaskStore


def test_enqueue_defaults_to_pending_now(store, clock):
    task = store.enqueue(TaskType.SEND_EMAIL_2, lead_owner(1), {"email": "a@example.com"})
    assert task.id is not None
    assert task.status == TaskStatus.PENDING.value
    assert task.attempts == 0
    assert task.max_attempts == 1
    assert as_utc(task.scheduled_for) == clock()
    assert task.payload == {"email": "a@example.com"}


def test_claim_only_returns_due_tasks_in_order(store, clock):
    later = store.enqueue(TaskType.SEND_EMAIL_2, lead_owner(1), None, clock() + timedelta(hours=1))
    first = store.enqueue(TaskType.SEND_EMAIL_2, lead_owner(2), None, clock() - timedelta(hours=2))
    second = store.enqueue(TaskType.SEND_EMAIL_2, lead_owner(3), None, clock() - timedelta(hours=1))

    claimed = store.claim_due_batch(10)

    assert [t.id for t in claimed] == [first.id, second.id]
    assert all(t.status == TaskStatus.PROCESSING.value for t in claimed)
    assert all(t.attempts == 1 for t in claimed)
    assert store.session.get(ScheduledTask, later.id).status == TaskStatus.PENDING.value


def test_claim_respects_limit(store, clock):
    for i in range(5):
        store.enqueue(TaskType.SEND_EMAIL_2, lead_owner(i), None, clock() - timedelta(minutes=i))
    assert len(store.claim_due_batch(3)) == 3
    assert len(store.claim_due_batch(3)) == 2
    assert store.claim_due_batch(3) == []


def test_claim_is_exclusive_between_two_sweeps(engine, store, clock):
    task = store.enqueue(TaskType.SEND_EMAIL_2, lead_owner(1))

    with Session(engine) as a, Session(engine) as b:
        sweep_a = TaskStore(a, clock=clock)
        sweep_b = TaskStore(b, clock=clock)

        # both sweeps see the same due task
        assert sweep_a.due_ids(10) == [task.id]
        assert sweep_b.due_ids(10) == [task.id]

        won_a = sweep_a.try_claim(task.id)
        a.commit()
        won_b = sweep_b.try_claim(task.id)
        b.commit()

    assert (won_a, won_b) == (True, False)
    store.session.expire_all()
    row = store.session.get(ScheduledTask, task.id)
    assert row.status == TaskStatus.PROCESSING.value
    assert row.attempts == 1


def test_mark_completed_only_from_processing(store):
    task = store.enqueue(TaskType.CLEANUP, None)
    assert store.mark_completed(task.id) is False

    store.claim_due_batch(1)
    assert store.mark_completed(task.id) is True

    row = store.session.get(ScheduledTask, task.id, populate_existing=True)
    assert row.status == TaskStatus.COMPLETED.value
    assert row.completed_at is not None


def test_mark_failed_is_terminal_without_retry_budget(store):
    task = store.enqueue(TaskType.SEND_EMAIL_2, lead_owner(1))
    store.claim_due_batch(1)

    assert store.mark_failed(task.id, "SMTP error: 421") == TaskStatus.FAILED.value

    row = store.session.get(ScheduledTask, task.id, populate_existing=True)
    assert row.status == TaskStatus.FAILED.value
    assert row.last_error == "SMTP error: 421"
    assert row.attempts == 1


def test_mark_failed_requeues_with_backoff_while_attempts_remain(session, clock):
    store = TaskStore(session, default_max_attempts=3, backoff_minutes=10, clock=clock)
    task = store.enqueue(TaskType.SEND_EMAIL_2, lead_owner(1))

    store.claim_due_batch(1)
    assert store.mark_failed(task.id, "timeout") == TaskStatus.PENDING.value
    row = session.get(ScheduledTask, task.id, populate_existing=True)
    assert as_utc(row.scheduled_for) == clock() + timedelta(minutes=10)

    # not due yet
    assert store.claim_due_batch(1) == []

    clock.advance(minutes=10)
    store.claim_due_batch(1)
    assert store.mark_failed(task.id, "timeout") == TaskStatus.PENDING.value
    row = session.get(ScheduledTask, task.id, populate_existing=True)
    assert as_utc(row.scheduled_for) == clock() + timedelta(minutes=20)

    clock.advance(minutes=20)
    store.claim_due_batch(1)
    assert store.mark_failed(task.id, "timeout") == TaskStatus.FAILED.value
    row = session.get(ScheduledTask, task.id, populate_existing=True)
    assert row.attempts == 3


def test_error_is_truncated(store):
    task = store.enqueue(TaskType.SEND_EMAIL_2, lead_owner(1))
    store.claim_due_batch(1)
    store.mark_failed(task.id, "x" * 2000)
    row = store.session.get(ScheduledTask, task.id, populate_existing=True)
    assert len(row.last_error) == 500


def test_cancel_all_for_owner_only_touches_pending_of_that_owner(store):
    mine = store.enqueue(TaskType.SEND_EMAIL_2, lead_owner(1))
    mine_later = store.enqueue(TaskType.CHECK_EMAIL_OPENED, lead_owner(1))
    other = store.enqueue(TaskType.SEND_EMAIL_2, lead_owner(2))
    user_same_id = store.enqueue(TaskType.SEND_ONBOARDING_EMAIL_1, "user:1")

    assert store.cancel_all_for_owner(lead_owner(1)) == 2

    statuses = {
        t.id: store.session.get(ScheduledTask, t.id, populate_existing=True).status
        for t in (mine, mine_later, other, user_same_id)
    }
    assert statuses[mine.id] == TaskStatus.CANCELLED.value
    assert statuses[mine_later.id] == TaskStatus.CANCELLED.value
    assert statuses[other.id] == TaskStatus.PENDING.value
    assert statuses[user_same_id.id] == TaskStatus.PENDING.value


def test_cancel_for_owner_by_type(store):
    email = store.enqueue(TaskType.SEND_EMAIL_2, lead_owner(1))
    check = store.enqueue(TaskType.CHECK_EMAIL_OPENED, lead_owner(1))

    assert store.cancel_for_owner(lead_owner(1), TaskType.CHECK_EMAIL_OPENED) == 1
    assert store.session.get(ScheduledTask, email.id, populate_existing=True).status == TaskStatus.PENDING.value
    assert store.session.get(ScheduledTask, check.id, populate_existing=True).status == TaskStatus.CANCELLED.value


def test_stats_counts_every_status(store):
    store.enqueue(TaskType.SEND_EMAIL_2, lead_owner(1))
    store.enqueue(TaskType.SEND_EMAIL_2, lead_owner(2))
    store.cancel_all_for_owner(lead_owner(2))

    stats = store.stats()
    assert stats["pending"] == 1
    assert stats["cancelled"] == 1
    assert stats["processing"] == 0
    assert set(stats) == {s.value for s in TaskStatus}
