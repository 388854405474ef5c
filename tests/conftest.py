"""
Shared fixtures.

Every test gets its own file-backed SQLite database, so separate sessions
see each other's commits the way API requests and workers do.
"""
from dataclasses import dataclass

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.database import get_db
from app.dependencies.email import get_email_client
from app.dependencies.rate_limit import check_rate_limit
from app.main import app
from app.models.base import Base
# Import all models to register them with Base
from app.models.user import User
from app.models.subscription import Subscription, SubscriptionStatus, SubscriptionToken
from app.models.newsletter import NewsletterIssue
from app.models.delivery import DeliveryTask, DeadLetter
from app.models.idempotency import IdempotencyRecord
from app.services.jwt_service import JWTService
from app.services.user_service import UserService


@dataclass
class SentEmail:
    recipient: str
    subject: str
    html_content: str
    text_content: str


class FakeEmailClient:
    """Records sent emails; raises queued errors per recipient first."""

    def __init__(self):
        self.sent: list[SentEmail] = []
        self.attempts: list[str] = []
        self.failures: dict[str, list[Exception]] = {}

    def fail(self, recipient: str, *errors: Exception) -> None:
        self.failures.setdefault(recipient, []).extend(errors)

    async def send_email(self, recipient, subject, html_content, text_content):
        self.attempts.append(recipient)
        pending = self.failures.get(recipient)
        if pending:
            raise pending.pop(0)
        self.sent.append(SentEmail(recipient, subject, html_content, text_content))

    async def aclose(self):
        pass

    def recipients(self) -> list[str]:
        return [email.recipient for email in self.sent]


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'newsletter.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def email_client():
    return FakeEmailClient()


@pytest_asyncio.fixture
async def publisher(session_factory):
    async with session_factory() as session:
        return await UserService(session).create("publisher", "correct-horse-battery")


@pytest.fixture
def auth_headers(publisher):
    token = JWTService().create_token(user_id=publisher.id, username=publisher.username)
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def client(session_factory, email_client):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    async def override_get_email_client():
        return email_client

    async def no_rate_limit():
        return None

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_email_client] = override_get_email_client
    app.dependency_overrides[check_rate_limit] = no_rate_limit

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client

    app.dependency_overrides.clear()


async def add_subscriber(
    session_factory,
    email: str,
    name: str = "Subscriber",
    status: SubscriptionStatus = SubscriptionStatus.CONFIRMED
) -> Subscription:
    """Insert a subscriber directly, skipping the confirmation flow."""
    async with session_factory() as session:
        subscription = Subscription(name=name, email=email, status=status)
        session.add(subscription)
        await session.commit()
        return subscription


async def add_issue(session_factory, publisher: User, title: str = "Issue #1") -> NewsletterIssue:
    async with session_factory() as session:
        issue = NewsletterIssue(
            title=title,
            text_content="Plain body",
            html_content="<p>HTML body</p>",
            published_by=publisher.id
        )
        session.add(issue)
        await session.commit()
        return issue
