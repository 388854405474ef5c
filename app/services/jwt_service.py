"""
JWT token service for publisher authentication.
"""
from datetime import datetime, timedelta, timezone
from jose import JWTError, jwt
from app.config import settings


# Claims a publisher token must carry besides exp
REQUIRED_CLAIMS = ("sub", "username")


class JWTService:
    """Issues and checks the bearer tokens used by publisher routes."""

    def create_token(self, user_id: str, username: str) -> str:
        """
        Issue a token for a logged-in publisher.

        Args:
            user_id: Publisher UUID, stored as `sub`
            username: Login name

        Returns:
            Signed JWT, valid for JWT_EXPIRATION_MINUTES
        """
        issued_at = datetime.now(timezone.utc)
        payload = {
            "sub": user_id,
            "username": username,
            "iat": issued_at,
            "exp": issued_at + timedelta(minutes=settings.JWT_EXPIRATION_MINUTES)
        }
        return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)

    def verify_token(self, token: str) -> dict | None:
        """
        Decode a token and check its signature, expiry and claims.

        Returns:
            Decoded claims, or None if the token is unusable
        """
        try:
            payload = jwt.decode(
                token,
                settings.JWT_SECRET_KEY,
                algorithms=[settings.JWT_ALGORITHM]
            )
        except JWTError:
            return None

        if any(not payload.get(claim) for claim in REQUIRED_CLAIMS):
            return None
        return payload
