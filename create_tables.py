"""
Script to create all database tables.

Creates every table defined in the models and, when ADMIN_USERNAME and
ADMIN_PASSWORD are set, the initial publisher account.
Run this after starting PostgreSQL with Docker.
"""
import asyncio
from app.config import settings
from app.database import AsyncSessionLocal, engine
from app.models.base import Base
# Import all models to register them with Base
from app.models.user import User
from app.models.subscription import Subscription, SubscriptionToken
from app.models.newsletter import NewsletterIssue
from app.models.delivery import DeliveryTask, DeadLetter
from app.models.idempotency import IdempotencyRecord
from app.services.user_service import UserService


async def create_all_tables():
    """Create all tables in the database."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print("All tables created successfully!")


async def drop_all_tables():
    """Drop all tables in the database (for testing)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    print("All tables dropped!")


async def create_admin():
    """Create the initial publisher if configured and missing."""
    if not settings.ADMIN_USERNAME or not settings.ADMIN_PASSWORD:
        print("ADMIN_USERNAME/ADMIN_PASSWORD not set, skipping publisher account")
        return

    async with AsyncSessionLocal() as db:
        user_service = UserService(db)
        if await user_service.get_by_username(settings.ADMIN_USERNAME):
            print(f"Publisher {settings.ADMIN_USERNAME} already exists")
            return
        user = await user_service.create(settings.ADMIN_USERNAME, settings.ADMIN_PASSWORD)
        print(f"Created publisher {user.username} ({user.id})")


async def main():
    """Main entry point."""
    print("Creating database tables...")
    await create_all_tables()
    await create_admin()
    await engine.dispose()
    print("Done!")


if __name__ == "__main__":
    asyncio.run(main())
