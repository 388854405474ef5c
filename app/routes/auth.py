"""
Authentication routes for publishers.

Publishers exchange username and password for a bearer JWT.
"""
import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies.auth import get_current_user, TokenPayload
from app.services.jwt_service import JWTService
from app.services.user_service import UserService

router = APIRouter(prefix="/auth", tags=["Authentication"])

logger = structlog.get_logger()


class LoginRequest(BaseModel):
    username: str
    password: str


@router.post("/login")
async def login(
    request: LoginRequest,
    db: AsyncSession = Depends(get_db)
):
    """
    Log a publisher in.

    Returns a JWT to be sent as `Authorization: Bearer <token>`.
    """
    user_service = UserService(db)
    user = await user_service.authenticate(request.username, request.password)

    if not user:
        logger.info("login_failed", username=request.username)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication failed",
            headers={"WWW-Authenticate": "Bearer"},
        )

    access_token = JWTService().create_token(user_id=user.id, username=user.username)
    logger.info("login_succeeded", user_id=user.id)

    return {
        "access_token": access_token,
        "token_type": "bearer",
        "user_id": user.id,
        "username": user.username
    }


@router.get("/me")
async def get_me(
    current_user: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Current publisher info."""
    user = await UserService(db).get_by_id(current_user.sub)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found"
        )

    return {
        "user_id": user.id,
        "username": user.username
    }
