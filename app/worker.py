"""
Background workers for the newsletter service.

Runs as its own process, next to the API:

    python -m app.worker

Two loops share the process:

- DeliveryWorker drains issue_delivery_queue one task at a time. Each task
  is locked (FOR UPDATE SKIP LOCKED) for the whole attempt and deleted only
  after the email API accepted the message, so delivery is at-least-once:
  a crash between sending and committing sends the email again.
- IdempotencyExpiryWorker deletes idempotency keys past their TTL.

SIGINT/SIGTERM stop both loops after the current transaction.
"""
import asyncio
import enum
import signal
from datetime import datetime, timedelta
from typing import Callable

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.database import AsyncSessionLocal, engine
from app.logging_config import configure_logging, get_logger
from app.exceptions import (
    IssueNotFoundError,
    PermanentDeliveryError,
    StorageUnavailableError,
    TransientDeliveryError,
)
from app.models.base import utcnow
from app.models.delivery import AbandonReason, DeliveryTask
from app.routes.metrics import track_delivery, track_delivery_abandoned, update_queue_depth
from app.sentry_config import capture_exception, capture_message, configure_sentry
from app.services.delivery_queue import DeliveryQueue
from app.services.email_client import EmailClient, build_email_client
from app.services.idempotency_service import IdempotencyService
from app.services.newsletter_service import NewsletterService
from app.services.subscription_service import parse_subscriber_email


logger = structlog.get_logger()

STORAGE_ERRORS = (SQLAlchemyError, OSError)


class ExecutionOutcome(str, enum.Enum):
    """Result of one worker iteration."""
    DELIVERED = "delivered"
    RETRY_SCHEDULED = "retry_scheduled"
    ABANDONED = "abandoned"
    EMPTY_QUEUE = "empty_queue"


class StoppableWorker:
    """Stop flag and stop-aware sleep shared by the worker loops."""

    def __init__(self):
        self._stop = asyncio.Event()

    def stop(self) -> None:
        """Ask the loop to exit once the current iteration is finished."""
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def _sleep(self, seconds: float) -> None:
        """Sleep, waking up early if stop() is called."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass


class DeliveryWorker(StoppableWorker):
    """
    Single-task-at-a-time delivery loop.

    Owns its session factory and email client; the only shared state with
    the API is the database.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        email_client: EmailClient,
        idle_sleep: float = 10.0,
        error_sleep: float = 1.0,
        max_retries: int = 5,
        max_storage_failures: int = 5,
        clock: Callable[[], datetime] = utcnow
    ):
        super().__init__()
        self.session_factory = session_factory
        self.email_client = email_client
        self.idle_sleep = idle_sleep
        self.error_sleep = error_sleep
        self.max_retries = max_retries
        self.max_storage_failures = max_storage_failures
        self.clock = clock

    async def run(self) -> None:
        """
        Poll the queue until stopped.

        Raises:
            StorageUnavailableError: the database failed max_storage_failures
                times in a row
        """
        logger.info("delivery_worker_started", max_retries=self.max_retries)
        storage_failures = 0

        while not self.stopping:
            try:
                outcome = await self.try_execute_task()
            except STORAGE_ERRORS as e:
                storage_failures += 1
                logger.error(
                    "delivery_storage_error",
                    error=str(e),
                    consecutive_failures=storage_failures
                )
                capture_exception(e)
                if storage_failures >= self.max_storage_failures:
                    raise StorageUnavailableError(
                        f"Database unavailable after {storage_failures} attempts"
                    ) from e
                await self._sleep(self.error_sleep)
                continue
            except Exception as e:
                storage_failures = 0
                logger.exception("delivery_attempt_crashed", error=str(e))
                capture_exception(e)
                await self._sleep(self.error_sleep)
                continue

            storage_failures = 0
            if outcome == ExecutionOutcome.EMPTY_QUEUE:
                await self._sleep(self.idle_sleep)

        logger.info("delivery_worker_stopped")

    async def run_until_empty(self) -> list[ExecutionOutcome]:
        """Process due tasks until none is left. Used by tests and scripts."""
        outcomes = []
        while True:
            outcome = await self.try_execute_task()
            if outcome == ExecutionOutcome.EMPTY_QUEUE:
                return outcomes
            outcomes.append(outcome)

    async def try_execute_task(self) -> ExecutionOutcome:
        """
        Attempt one delivery inside one transaction.

        The task row stays locked from dequeue until commit. An unexpected
        error rolls the transaction back; the crash is then counted against
        the task in a new transaction and the error is re-raised.
        """
        async with self.session_factory() as session:
            queue = DeliveryQueue(session)
            now = self.clock()

            task = await queue.dequeue_one(now)
            if task is None:
                await session.rollback()
                logger.debug("queue_empty")
                return ExecutionOutcome.EMPTY_QUEUE

            issue_id = task.newsletter_issue_id
            subscriber_email = task.subscriber_email
            log = get_logger(
                issue_id=issue_id,
                subscriber_email=subscriber_email,
                n_retries=task.n_retries
            )

            try:
                outcome = await self._attempt(session, queue, task, now, log)
                await session.commit()
            except STORAGE_ERRORS:
                raise
            except Exception as e:
                await session.rollback()
                await self._record_crash(session, issue_id, subscriber_email, now, e, log)
                raise

            # Abandoned tasks are counted by reason in _abandon
            if outcome != ExecutionOutcome.ABANDONED:
                track_delivery(outcome.value)

            update_queue_depth(await queue.pending_count())
            return outcome

    async def _attempt(
        self,
        session: AsyncSession,
        queue: DeliveryQueue,
        task: DeliveryTask,
        now: datetime,
        log
    ) -> ExecutionOutcome:
        try:
            issue = await NewsletterService(session).require_issue(task.newsletter_issue_id)
        except IssueNotFoundError as e:
            log.error("delivery_issue_missing", error=str(e))
            capture_message(
                str(e),
                level="error",
                issue_id=task.newsletter_issue_id,
                subscriber_email=task.subscriber_email
            )
            return await self._abandon(queue, task, AbandonReason.ISSUE_MISSING, str(e), log)

        try:
            recipient = parse_subscriber_email(task.subscriber_email)
        except ValueError as e:
            return await self._abandon(queue, task, AbandonReason.INVALID_RECIPIENT, str(e), log)

        try:
            await self.email_client.send_email(
                recipient,
                issue.title,
                issue.html_content,
                issue.text_content
            )
        except PermanentDeliveryError as e:
            return await self._abandon(queue, task, AbandonReason.PERMANENT_FAILURE, str(e), log)
        except TransientDeliveryError as e:
            if task.n_retries >= self.max_retries:
                return await self._abandon(
                    queue, task, AbandonReason.RETRIES_EXHAUSTED, str(e), log
                )
            updated = await queue.record_failed_attempt(
                task.newsletter_issue_id,
                task.subscriber_email,
                now
            )
            log.warning(
                "delivery_retry_scheduled",
                error=str(e),
                n_retries=updated.n_retries,
                retry_at=updated.retry_at.isoformat()
            )
            return ExecutionOutcome.RETRY_SCHEDULED

        await queue.delete(task.newsletter_issue_id, task.subscriber_email)
        log.info("delivery_succeeded")
        return ExecutionOutcome.DELIVERED

    async def _abandon(
        self,
        queue: DeliveryQueue,
        task: DeliveryTask,
        reason: AbandonReason,
        error_message: str,
        log
    ) -> ExecutionOutcome:
        await queue.abandon(task, reason, error_message)
        log.error("delivery_abandoned", reason=reason.value, error=error_message)
        track_delivery_abandoned(reason.value)
        return ExecutionOutcome.ABANDONED

    async def _record_crash(
        self,
        session: AsyncSession,
        issue_id: str,
        subscriber_email: str,
        now: datetime,
        error: Exception,
        log
    ) -> None:
        """Back off a task whose attempt crashed, or dead-letter it past max_retries."""
        queue = DeliveryQueue(session)
        task = await queue.get(issue_id, subscriber_email, lock=True)
        if task is None:
            # Delivered or picked up by another worker meanwhile
            await session.rollback()
            return

        if task.n_retries >= self.max_retries:
            await self._abandon(queue, task, AbandonReason.ATTEMPT_CRASHED, repr(error), log)
        else:
            updated = await queue.record_failed_attempt(issue_id, subscriber_email, now)
            log.warning(
                "delivery_crash_retry_scheduled",
                error=repr(error),
                n_retries=updated.n_retries,
                retry_at=updated.retry_at.isoformat()
            )
        await session.commit()


class IdempotencyExpiryWorker(StoppableWorker):
    """Periodically deletes idempotency keys older than the TTL."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ttl: timedelta = timedelta(hours=24),
        interval: float = 600.0,
        error_sleep: float = 60.0,
        clock: Callable[[], datetime] = utcnow
    ):
        super().__init__()
        self.session_factory = session_factory
        self.ttl = ttl
        self.interval = interval
        self.error_sleep = error_sleep
        self.clock = clock

    async def expire_once(self) -> int:
        """Delete expired keys. Returns how many were removed."""
        async with self.session_factory() as session:
            cutoff = self.clock() - self.ttl
            return await IdempotencyService(session).expire(cutoff)

    async def run(self) -> None:
        logger.info("idempotency_expiry_started", ttl_hours=self.ttl.total_seconds() / 3600)
        while not self.stopping:
            try:
                deleted = await self.expire_once()
            except STORAGE_ERRORS as e:
                logger.error("idempotency_expiry_failed", error=str(e))
                capture_exception(e)
                delay = self.error_sleep
            else:
                if deleted:
                    logger.info("idempotency_keys_expired", deleted=deleted)
                delay = self.interval

            await self._sleep(delay)
        logger.info("idempotency_expiry_stopped")


async def main():
    """Run the delivery and expiry workers until SIGINT/SIGTERM."""
    configure_logging(component="worker")
    configure_sentry(component="worker")

    email_client = build_email_client()
    delivery_worker = DeliveryWorker(
        AsyncSessionLocal,
        email_client,
        idle_sleep=settings.DELIVERY_IDLE_SLEEP_SECONDS,
        error_sleep=settings.DELIVERY_ERROR_SLEEP_SECONDS,
        max_retries=settings.DELIVERY_MAX_RETRIES,
        max_storage_failures=settings.DELIVERY_MAX_STORAGE_FAILURES,
    )
    expiry_worker = IdempotencyExpiryWorker(
        AsyncSessionLocal,
        ttl=timedelta(hours=settings.IDEMPOTENCY_TTL_HOURS),
        interval=settings.IDEMPOTENCY_EXPIRY_INTERVAL_SECONDS,
        error_sleep=settings.IDEMPOTENCY_EXPIRY_ERROR_SLEEP_SECONDS,
    )

    def shutdown():
        logger.info("worker_shutdown_requested")
        delivery_worker.stop()
        expiry_worker.stop()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown)

    try:
        # The delivery loop ending (stop or storage failure) ends the process
        expiry_task = asyncio.create_task(expiry_worker.run())
        try:
            await delivery_worker.run()
        finally:
            expiry_worker.stop()
            await expiry_task
    finally:
        await email_client.aclose()
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
