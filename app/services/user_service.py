"""
User service for publisher accounts and password verification.
"""
import bcrypt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from app.models.user import User


def hash_password(raw_password: str) -> str:
    return bcrypt.hashpw(raw_password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(raw_password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(raw_password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed hash
        return False


class UserService:
    """Service for managing publisher accounts."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, user_id: str) -> User | None:
        """Get user by ID."""
        stmt = select(User).where(User.id == user_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_username(self, username: str) -> User | None:
        """Get user by username."""
        stmt = select(User).where(User.username == username)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, username: str, password: str) -> User:
        """
        Create a new publisher.

        Args:
            username: Unique login name
            password: Plain-text password, stored hashed

        Returns:
            Newly created User
        """
        user = User(username=username, password_hash=hash_password(password))
        self.db.add(user)
        await self.db.commit()
        await self.db.refresh(user)
        return user

    async def authenticate(self, username: str, password: str) -> User | None:
        """
        Check credentials.

        Returns:
            User if the password matches, None otherwise
        """
        user = await self.get_by_username(username)
        if not user:
            # Hash anyway so unknown usernames take as long as wrong passwords
            hash_password(password)
            return None
        if not verify_password(password, user.password_hash):
            return None
        return user
