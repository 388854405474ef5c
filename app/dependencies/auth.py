"""
Authentication dependencies for FastAPI.

Publisher routes require a bearer JWT issued by POST /auth/login.
"""
import structlog
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel

from app.services.jwt_service import JWTService


# Security scheme
security = HTTPBearer()


class TokenPayload(BaseModel):
    """JWT token payload model."""
    sub: str      # user_id
    username: str


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> TokenPayload:
    """
    Dependency that requires a valid publisher JWT.

    Binds the publisher's user_id to the request's log context.

    Usage:
        @router.post("")
        async def publish(user: TokenPayload = Depends(get_current_user)):
            ...
    """
    payload = JWTService().verify_token(credentials.credentials)

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = TokenPayload(sub=payload["sub"], username=payload["username"])
    structlog.contextvars.bind_contextvars(user_id=user.sub)
    return user
