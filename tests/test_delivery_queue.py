"""
Delivery queue tests.

Covers enqueue/dequeue, idempotent deletes, the retry back-off and
dead-lettering.
"""
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.dialects import postgresql

from app.exceptions import DeliveryConflictError
from app.models.delivery import AbandonReason
from app.services.delivery_queue import DeliveryQueue, due_task_query
from conftest import add_issue


NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def naive(value: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo
    return value.replace(tzinfo=None)


@pytest_asyncio.fixture
async def issue(session_factory, publisher):
    return await add_issue(session_factory, publisher)


@pytest.mark.asyncio
async def test_enqueue_then_dequeue(db, issue):
    queue = DeliveryQueue(db)
    await queue.enqueue(issue.id, "ada@gmail.com")
    await db.commit()

    task = await queue.dequeue_one(NOW)

    assert task is not None
    assert task.newsletter_issue_id == issue.id
    assert task.subscriber_email == "ada@gmail.com"
    assert task.n_retries == 0
    assert task.execute_after == 2
    assert task.retry_at is None


@pytest.mark.asyncio
async def test_dequeue_empty_queue_returns_none(db):
    assert await DeliveryQueue(db).dequeue_one(NOW) is None


@pytest.mark.asyncio
async def test_enqueue_same_pair_twice_conflicts(db, issue):
    queue = DeliveryQueue(db)
    await queue.enqueue(issue.id, "ada@gmail.com")

    with pytest.raises(DeliveryConflictError) as exc_info:
        await queue.enqueue(issue.id, "ada@gmail.com")

    assert exc_info.value.subscriber_email == "ada@gmail.com"
    await db.rollback()


@pytest.mark.asyncio
async def test_delete_is_idempotent(db, issue):
    queue = DeliveryQueue(db)
    await queue.enqueue(issue.id, "ada@gmail.com")
    await db.commit()

    await queue.delete(issue.id, "ada@gmail.com")
    await queue.delete(issue.id, "ada@gmail.com")
    await db.commit()

    assert await queue.get(issue.id, "ada@gmail.com") is None
    assert await queue.pending_count() == 0


@pytest.mark.asyncio
async def test_failed_attempts_double_the_delay(db, issue):
    queue = DeliveryQueue(db)
    await queue.enqueue(issue.id, "ada@gmail.com")
    await db.commit()

    delays = []
    for _ in range(3):
        task = await queue.record_failed_attempt(issue.id, "ada@gmail.com", NOW)
        delays.append(task.retry_at - NOW)
    await db.commit()

    assert delays == [timedelta(seconds=2), timedelta(seconds=4), timedelta(seconds=8)]

    task = await queue.get(issue.id, "ada@gmail.com")
    assert task.n_retries == 3
    assert task.execute_after == 16
    assert naive(task.retry_at) == naive(NOW + timedelta(seconds=8))


@pytest.mark.asyncio
async def test_record_failed_attempt_on_missing_task(db, issue):
    assert await DeliveryQueue(db).record_failed_attempt(issue.id, "ghost@gmail.com", NOW) is None


@pytest.mark.asyncio
async def test_task_is_not_due_before_retry_at(db, issue):
    queue = DeliveryQueue(db)
    await queue.enqueue(issue.id, "ada@gmail.com")
    await queue.record_failed_attempt(issue.id, "ada@gmail.com", NOW)
    await db.commit()

    assert await queue.dequeue_one(NOW) is None
    assert await queue.dequeue_one(NOW + timedelta(seconds=1)) is None

    task = await queue.dequeue_one(NOW + timedelta(seconds=2))
    assert task is not None
    assert task.n_retries == 1


@pytest.mark.asyncio
async def test_pending_count_per_issue(db, session_factory, publisher, issue):
    other = await add_issue(session_factory, publisher, title="Issue #2")
    queue = DeliveryQueue(db)
    await queue.enqueue(issue.id, "ada@gmail.com")
    await queue.enqueue(issue.id, "grace@gmail.com")
    await queue.enqueue(other.id, "ada@gmail.com")
    await db.commit()

    assert await queue.pending_count() == 3
    assert await queue.pending_count(issue.id) == 2
    assert await queue.pending_count(other.id) == 1


@pytest.mark.asyncio
async def test_abandon_moves_task_to_dead_letters(db, issue):
    queue = DeliveryQueue(db)
    await queue.enqueue(issue.id, "ada@gmail.com")
    await queue.record_failed_attempt(issue.id, "ada@gmail.com", NOW)
    await db.commit()

    task = await queue.get(issue.id, "ada@gmail.com")
    await queue.abandon(task, AbandonReason.PERMANENT_FAILURE, "HTTP 422")
    await db.commit()

    assert await queue.pending_count() == 0
    dead_letters = await queue.get_dead_letters(issue.id)
    assert len(dead_letters) == 1
    assert dead_letters[0].subscriber_email == "ada@gmail.com"
    assert dead_letters[0].reason == AbandonReason.PERMANENT_FAILURE
    assert dead_letters[0].n_retries == 1
    assert dead_letters[0].error_message == "HTTP 422"


def test_dequeue_skips_locked_rows_on_postgres():
    sql = str(due_task_query(NOW).compile(dialect=postgresql.dialect()))

    assert "FOR UPDATE SKIP LOCKED" in sql
    assert "LIMIT" in sql
    assert "retry_at IS NULL OR" in sql
