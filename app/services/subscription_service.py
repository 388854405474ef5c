"""
Subscription service.

Handles sign-up, confirmation tokens and the confirmed-subscriber list
that newsletter issues are delivered to.
"""
import secrets
import string
from pydantic import EmailStr, TypeAdapter, ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.subscription import Subscription, SubscriptionStatus, SubscriptionToken


MAX_NAME_LENGTH = 256
FORBIDDEN_NAME_CHARACTERS = set('/()"<>\\{}')
TOKEN_LENGTH = 25

_email_adapter = TypeAdapter(EmailStr)


def parse_subscriber_name(name: str) -> str:
    """
    Validate a subscriber name.

    Raises:
        ValueError: blank, longer than 256 characters or containing /()"<>\\{}
    """
    if not name or not name.strip():
        raise ValueError("Subscriber name cannot be empty")
    if len(name) > MAX_NAME_LENGTH:
        raise ValueError(f"Subscriber name cannot be longer than {MAX_NAME_LENGTH} characters")
    if any(c in FORBIDDEN_NAME_CHARACTERS for c in name):
        raise ValueError(f"Invalid subscriber name: {name!r}")
    return name


def parse_subscriber_email(email: str) -> str:
    """
    Validate an email address, for recipients and senders alike.

    Raises:
        ValueError: not a syntactically valid address
    """
    try:
        return str(_email_adapter.validate_python(email))
    except ValidationError as e:
        raise ValueError(f"Invalid email: {email!r}") from e


def generate_subscription_token() -> str:
    """Random 25-character alphanumeric token."""
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(TOKEN_LENGTH))


class SubscriptionService:
    """Service for managing newsletter subscriptions."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_email(self, email: str) -> Subscription | None:
        """Get subscription by email address."""
        stmt = select(Subscription).where(Subscription.email == email)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def create_pending(self, name: str, email: str) -> Subscription:
        """
        Insert a subscription awaiting confirmation (no commit).

        Args:
            name: Validated subscriber name
            email: Validated subscriber email

        Returns:
            The flushed Subscription
        """
        subscription = Subscription(
            name=name,
            email=email,
            status=SubscriptionStatus.PENDING_CONFIRMATION
        )
        self.db.add(subscription)
        await self.db.flush()
        return subscription

    async def store_token(self, subscriber_id: str) -> str:
        """Create a confirmation token for a subscriber (no commit)."""
        token = generate_subscription_token()
        self.db.add(SubscriptionToken(subscription_token=token, subscriber_id=subscriber_id))
        await self.db.flush()
        return token

    async def get_subscriber_id_from_token(self, token: str) -> str | None:
        """Resolve a confirmation token to its subscriber."""
        stmt = select(SubscriptionToken.subscriber_id).where(
            SubscriptionToken.subscription_token == token
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def confirm(self, subscriber_id: str) -> Subscription | None:
        """
        Mark a subscriber as confirmed.

        Returns:
            Subscription if found, None otherwise
        """
        stmt = select(Subscription).where(Subscription.id == subscriber_id)
        result = await self.db.execute(stmt)
        subscription = result.scalar_one_or_none()
        if not subscription:
            return None

        subscription.status = SubscriptionStatus.CONFIRMED
        await self.db.commit()
        return subscription

    async def get_confirmed_emails(self) -> list[str]:
        """Email addresses of all confirmed subscribers."""
        stmt = (
            select(Subscription.email)
            .where(Subscription.status == SubscriptionStatus.CONFIRMED)
            .order_by(Subscription.subscribed_at)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
