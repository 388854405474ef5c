"""
Subscription models.

A subscriber signs up with name and email, receives a confirmation link
carrying a token, and becomes `confirmed` once the link is visited. Only
confirmed subscribers receive newsletter issues.
"""
import uuid
import enum
from datetime import datetime
from sqlalchemy import String, Text, DateTime, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from app.models.base import Base, utcnow


class SubscriptionStatus(str, enum.Enum):
    """Subscription status enum."""
    PENDING_CONFIRMATION = "pending_confirmation"
    CONFIRMED = "confirmed"


class Subscription(Base):
    """A newsletter subscriber."""
    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )
    email: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    subscribed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        SQLEnum(SubscriptionStatus, native_enum=False, create_type=False),
        nullable=False,
        default=SubscriptionStatus.PENDING_CONFIRMATION
    )

    def __repr__(self):
        return f"<Subscription(id={self.id}, email={self.email}, status={self.status})>"


class SubscriptionToken(Base):
    """Confirmation token sent to a pending subscriber."""
    __tablename__ = "subscription_tokens"

    subscription_token: Mapped[str] = mapped_column(String(25), primary_key=True)
    subscriber_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
