"""
Durable delivery queue backed by the issue_delivery_queue table.

Every method runs inside the caller's transaction and never commits: the
worker decides when an attempt is finished, the publish handler commits
the enqueued tasks together with the idempotency record.
"""
from datetime import datetime, timedelta
from sqlalchemy import Select, delete, func, insert, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import DeliveryConflictError
from app.models.delivery import AbandonReason, DeadLetter, DeliveryTask, INITIAL_EXECUTE_AFTER


def due_task_query(now: datetime) -> Select:
    """SELECT ... FOR UPDATE SKIP LOCKED of one task due at `now`."""
    return (
        select(DeliveryTask)
        .where(or_(DeliveryTask.retry_at.is_(None), DeliveryTask.retry_at <= now))
        .limit(1)
        .with_for_update(skip_locked=True)
        .execution_options(populate_existing=True)
    )


class DeliveryQueue:
    """Service for the pending (issue, subscriber) delivery tasks."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def enqueue(self, issue_id: str, subscriber_email: str) -> None:
        """
        Queue one delivery.

        Args:
            issue_id: Newsletter issue UUID
            subscriber_email: Recipient address

        Raises:
            DeliveryConflictError: the pair is already queued
        """
        stmt = insert(DeliveryTask).values(
            newsletter_issue_id=issue_id,
            subscriber_email=subscriber_email,
            n_retries=0,
            execute_after=INITIAL_EXECUTE_AFTER,
            retry_at=None,
        )
        try:
            await self.db.execute(stmt)
        except IntegrityError as exc:
            raise DeliveryConflictError(issue_id, subscriber_email) from exc

    async def dequeue_one(self, now: datetime) -> DeliveryTask | None:
        """
        Pick and lock one task that is due.

        Rows locked by another transaction are skipped, so concurrent
        workers never hold the same task. The lock lasts until the caller
        commits or rolls back.

        Args:
            now: Current time; tasks with retry_at in the future are ignored

        Returns:
            A DeliveryTask, or None if nothing is due
        """
        result = await self.db.execute(due_task_query(now))
        return result.scalar_one_or_none()

    async def get(
        self,
        issue_id: str,
        subscriber_email: str,
        lock: bool = False
    ) -> DeliveryTask | None:
        """
        Fresh read of a single task.

        With lock=True the row is locked until the transaction ends, and a
        row already locked elsewhere reads as None.
        """
        stmt = (
            select(DeliveryTask)
            .where(
                DeliveryTask.newsletter_issue_id == issue_id,
                DeliveryTask.subscriber_email == subscriber_email
            )
            .execution_options(populate_existing=True)
        )
        if lock:
            stmt = stmt.with_for_update(skip_locked=True)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def delete(self, issue_id: str, subscriber_email: str) -> None:
        """Remove a delivered task. Deleting an absent task is a no-op."""
        stmt = delete(DeliveryTask).where(
            DeliveryTask.newsletter_issue_id == issue_id,
            DeliveryTask.subscriber_email == subscriber_email
        )
        await self.db.execute(stmt)

    async def record_failed_attempt(
        self,
        issue_id: str,
        subscriber_email: str,
        now: datetime
    ) -> DeliveryTask | None:
        """
        Push a task back after a transient failure.

        The task becomes due again after its current execute_after delay;
        the delay then doubles for the following attempt.

        Args:
            issue_id: Newsletter issue UUID
            subscriber_email: Recipient address
            now: Time of the failed attempt

        Returns:
            The updated task, or None if it is no longer queued
        """
        task = await self.get(issue_id, subscriber_email)
        if not task:
            return None

        task.retry_at = now + timedelta(seconds=task.execute_after)
        task.n_retries += 1
        task.execute_after *= 2

        await self.db.flush()
        return task

    async def abandon(
        self,
        task: DeliveryTask,
        reason: AbandonReason,
        error_message: str | None = None
    ) -> DeadLetter:
        """Move a task to the dead-letter table."""
        dead_letter = DeadLetter(
            newsletter_issue_id=task.newsletter_issue_id,
            subscriber_email=task.subscriber_email,
            n_retries=task.n_retries,
            reason=reason,
            error_message=error_message,
        )
        self.db.add(dead_letter)
        await self.delete(task.newsletter_issue_id, task.subscriber_email)
        await self.db.flush()
        return dead_letter

    async def pending_count(self, issue_id: str | None = None) -> int:
        """Number of queued tasks, optionally for one issue."""
        stmt = select(func.count()).select_from(DeliveryTask)
        if issue_id is not None:
            stmt = stmt.where(DeliveryTask.newsletter_issue_id == issue_id)
        result = await self.db.execute(stmt)
        return result.scalar_one()

    async def get_dead_letters(self, issue_id: str) -> list[DeadLetter]:
        """Abandoned deliveries of an issue, oldest first."""
        stmt = (
            select(DeadLetter)
            .where(DeadLetter.newsletter_issue_id == issue_id)
            .order_by(DeadLetter.id)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
