"""
Delivery queue models.

A row in issue_delivery_queue means "this issue still has to reach this
subscriber". There is no status column: the row is deleted once the email
is accepted by the email API, or moved to the dead-letter table when the
task is abandoned.
"""
import enum
from datetime import datetime
from sqlalchemy import String, Text, Integer, DateTime, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from app.models.base import Base, utcnow


# Seconds to wait before the first retry; doubled after every failed attempt.
INITIAL_EXECUTE_AFTER = 2


class DeliveryTask(Base):
    """A pending (issue, recipient) delivery."""
    __tablename__ = "issue_delivery_queue"

    newsletter_issue_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("newsletter_issues.id"),
        primary_key=True
    )
    subscriber_email: Mapped[str] = mapped_column(Text, primary_key=True)
    n_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    execute_after: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=INITIAL_EXECUTE_AFTER
    )
    # Earliest time the task may be picked again; NULL means right away
    retry_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        index=True
    )

    def __repr__(self):
        return (
            f"<DeliveryTask(issue_id={self.newsletter_issue_id}, "
            f"email={self.subscriber_email}, n_retries={self.n_retries})>"
        )


class AbandonReason(str, enum.Enum):
    """Why a delivery task left the queue without being delivered."""
    PERMANENT_FAILURE = "permanent_failure"
    RETRIES_EXHAUSTED = "retries_exhausted"
    INVALID_RECIPIENT = "invalid_recipient"
    ISSUE_MISSING = "issue_missing"
    ATTEMPT_CRASHED = "attempt_crashed"


class DeadLetter(Base):
    """Audit record of an abandoned delivery task."""
    __tablename__ = "issue_delivery_dead_letters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    newsletter_issue_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    subscriber_email: Mapped[str] = mapped_column(Text, nullable=False)
    n_retries: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[AbandonReason] = mapped_column(
        SQLEnum(AbandonReason, native_enum=False, create_type=False),
        nullable=False
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    failed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow
    )

    def __repr__(self):
        return f"<DeadLetter(issue_id={self.newsletter_issue_id}, reason={self.reason})>"
