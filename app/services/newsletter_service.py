"""
Newsletter issue service.

Creates issues and fans them out into the delivery queue, one task per
confirmed subscriber.
"""
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import IssueNotFoundError
from app.models.newsletter import NewsletterIssue
from app.services.delivery_queue import DeliveryQueue
from app.services.subscription_service import SubscriptionService


class NewsletterService:
    """Service for publishing newsletter issues."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_issue(
        self,
        title: str,
        text_content: str,
        html_content: str,
        published_by: str
    ) -> NewsletterIssue:
        """
        Insert an issue in the current transaction (no commit).

        Args:
            title: Email subject
            text_content: Plain-text body
            html_content: HTML body
            published_by: Publisher user UUID

        Returns:
            The flushed NewsletterIssue
        """
        issue = NewsletterIssue(
            title=title,
            text_content=text_content,
            html_content=html_content,
            published_by=published_by
        )
        self.db.add(issue)
        await self.db.flush()
        return issue

    async def enqueue_delivery_tasks(self, issue_id: str) -> int:
        """
        Queue the issue for every confirmed subscriber (no commit).

        Returns:
            Number of tasks enqueued
        """
        emails = await SubscriptionService(self.db).get_confirmed_emails()
        queue = DeliveryQueue(self.db)
        for email in emails:
            await queue.enqueue(issue_id, email)
        return len(emails)

    async def get_issue(self, issue_id: str) -> NewsletterIssue | None:
        """Get issue by ID."""
        stmt = select(NewsletterIssue).where(NewsletterIssue.id == issue_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def require_issue(self, issue_id: str) -> NewsletterIssue:
        """
        Get issue by ID for delivery.

        Raises:
            IssueNotFoundError: no such issue
        """
        issue = await self.get_issue(issue_id)
        if not issue:
            raise IssueNotFoundError(f"Newsletter issue not found: {issue_id}")
        return issue
