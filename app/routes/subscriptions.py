"""
Subscription routes.

Sign-up sends a confirmation link; visiting the link confirms the
subscriber, who then receives every newsletter issue.
"""
import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.dependencies.email import get_email_client
from app.dependencies.rate_limit import check_rate_limit
from app.exceptions import DeliveryError
from app.models.subscription import SubscriptionStatus
from app.services.email_client import EmailClient
from app.services.subscription_service import (
    SubscriptionService,
    parse_subscriber_email,
    parse_subscriber_name,
)


router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])

logger = structlog.get_logger()


class SubscribeRequest(BaseModel):
    """Request model for a new subscription."""
    name: str
    email: str


def confirmation_email(name: str, token: str) -> tuple[str, str, str]:
    """Subject, HTML body and text body of the confirmation email."""
    link = f"{settings.BASE_URL}/subscriptions/confirm?subscription_token={token}"
    subject = "Welcome!"
    html_body = (
        f"<p>Hi {name},</p>"
        f'<p>Click <a href="{link}">here</a> to confirm your subscription.</p>'
    )
    text_body = f"Hi {name},\nVisit {link} to confirm your subscription."
    return subject, html_body, text_body


@router.post("", status_code=status.HTTP_200_OK, dependencies=[Depends(check_rate_limit)])
async def subscribe(
    request: SubscribeRequest,
    db: AsyncSession = Depends(get_db),
    email_client: EmailClient = Depends(get_email_client)
):
    """
    Subscribe to the newsletter.

    Creates (or reuses) a pending subscription and emails a confirmation
    link. Subscribing again while pending sends a fresh link.
    """
    try:
        name = parse_subscriber_name(request.name)
        email = parse_subscriber_email(request.email)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    log = logger.bind(subscriber_email=email)
    subscription_service = SubscriptionService(db)

    try:
        subscription = await subscription_service.get_by_email(email)
        if subscription and subscription.status == SubscriptionStatus.CONFIRMED:
            log.info("subscription_already_confirmed")
            return {"status": "confirmed"}

        if not subscription:
            subscription = await subscription_service.create_pending(name, email)

        token = await subscription_service.store_token(subscription.id)
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        log.error("subscription_store_failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Could not store subscription"
        )

    subject, html_body, text_body = confirmation_email(name, token)
    try:
        await email_client.send_email(email, subject, html_body, text_body)
    except DeliveryError as e:
        log.error("confirmation_email_failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Could not send confirmation email"
        )

    log.info("subscription_pending", subscriber_id=subscription.id)
    return {"status": "pending_confirmation"}


@router.get("/confirm")
async def confirm(
    subscription_token: str,
    db: AsyncSession = Depends(get_db)
):
    """Confirm a pending subscription from the emailed link."""
    subscription_service = SubscriptionService(db)

    subscriber_id = await subscription_service.get_subscriber_id_from_token(subscription_token)
    if not subscriber_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown subscription token"
        )

    subscription = await subscription_service.confirm(subscriber_id)
    if not subscription:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Subscriber not found"
        )

    logger.info("subscription_confirmed", subscriber_id=subscriber_id)
    return {"status": "confirmed"}
