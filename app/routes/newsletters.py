"""
Newsletter API routes.

Publishing is idempotent per (publisher, idempotency key): a retried or
double-submitted request replays the first response instead of queueing
the deliveries twice.
"""
import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies.auth import get_current_user, TokenPayload
from app.exceptions import NewsletterError
from app.routes.metrics import track_idempotent_request, track_issue_published
from app.sentry_config import capture_exception
from app.services.delivery_queue import DeliveryQueue
from app.services.idempotency_service import (
    IdempotencyService,
    NextAction,
    SavedResponse,
    parse_idempotency_key,
)
from app.services.newsletter_service import NewsletterService


router = APIRouter(prefix="/api/newsletters", tags=["newsletters"])

logger = structlog.get_logger()

# Seconds a client should wait before retrying a request that is in flight
IN_PROGRESS_RETRY_AFTER = 1


class PublishIssueRequest(BaseModel):
    """Request model for publishing an issue."""
    title: str
    text_content: str
    html_content: str
    idempotency_key: str | None = None


class IssueResponse(BaseModel):
    """Response model for an issue."""
    id: str
    title: str
    text_content: str
    html_content: str
    published_by: str
    published_at: str
    pending_deliveries: int


@router.post("")
async def publish_newsletter(
    request: PublishIssueRequest,
    idempotency_key_header: str | None = Header(default=None, alias="Idempotency-Key"),
    current_user: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Publish a newsletter issue to all confirmed subscribers.

    Returns 202 once the deliveries are queued. A request repeating an
    idempotency key gets the saved response back verbatim, or 409 if the
    first request with that key has not finished yet.
    """
    try:
        key = parse_idempotency_key(idempotency_key_header or request.idempotency_key)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    user_id = current_user.sub
    log = logger.bind(user_id=user_id, idempotency_key=key)
    idempotency = IdempotencyService(db)

    try:
        decision = await idempotency.try_processing(user_id, key)
    except SQLAlchemyError as e:
        log.error("idempotency_check_failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Could not check idempotency key"
        )

    if decision.action == NextAction.RETURN_SAVED_RESPONSE:
        log.info("publish_replayed")
        track_idempotent_request("replayed")
        return decision.saved_response.to_response()

    if decision.action == NextAction.IN_PROGRESS:
        log.info("publish_in_progress")
        track_idempotent_request("in_progress")
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": "A request with this idempotency key is already in progress"},
            headers={"Retry-After": str(IN_PROGRESS_RETRY_AFTER)}
        )

    newsletter_service = NewsletterService(db)
    try:
        issue = await newsletter_service.create_issue(
            title=request.title,
            text_content=request.text_content,
            html_content=request.html_content,
            published_by=user_id
        )
        enqueued = await newsletter_service.enqueue_delivery_tasks(issue.id)

        response = JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content={
                "issue_id": issue.id,
                "status": "publishing",
                "deliveries_enqueued": enqueued
            }
        )
        await idempotency.save_response(user_id, key, SavedResponse.from_response(response))
        await db.commit()
    except Exception as e:
        # Any failure frees the key so the client can retry with it
        if isinstance(e, (SQLAlchemyError, NewsletterError)):
            log.error("publish_failed", error=str(e))
        else:
            log.exception("publish_crashed", error=str(e))
            capture_exception(e, idempotency_key=key)
        try:
            await db.rollback()
            await idempotency.release(user_id, key)
        except (SQLAlchemyError, OSError) as release_error:
            log.error("idempotency_release_failed", error=str(release_error))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Could not publish newsletter issue"
        ) from e

    log.info("issue_published", issue_id=issue.id, deliveries_enqueued=enqueued)
    track_issue_published(enqueued)
    return response


@router.get("/{issue_id}", response_model=IssueResponse)
async def get_newsletter(
    issue_id: str,
    current_user: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Get an issue and the number of deliveries still queued for it."""
    issue = await NewsletterService(db).get_issue(issue_id)

    if not issue:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Newsletter issue not found"
        )

    pending = await DeliveryQueue(db).pending_count(issue.id)

    return IssueResponse(
        id=issue.id,
        title=issue.title,
        text_content=issue.text_content,
        html_content=issue.html_content,
        published_by=issue.published_by,
        published_at=issue.published_at.isoformat(),
        pending_deliveries=pending
    )
