"""Newsletter router: publish issues and inspect their deliveries."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from newsletter.auth.dependencies import get_current_user
from newsletter.config import settings
from newsletter.database import get_db
from newsletter.middleware.rate_limit import limiter
from newsletter.models.issue import NewsletterIssue
from newsletter.models.user import User
from newsletter.schemas.newsletter import (
    DeliveryStatusResponse,
    FailedDeliveryItem,
    PublishIssueRequest,
    PublishIssueResponse,
)
from newsletter.services.delivery_queue import DeliveryQueue
from newsletter.services.idempotency import IdempotencyService, Replay, SavedResponse
from newsletter.services.outbox import IssuePublisher

router = APIRouter(prefix="/api/v1/admin/newsletters", tags=["Newsletters"])

ACCEPTED_MESSAGE = "The newsletter issue has been accepted - emails will go out shortly."


# --- Publish Issue ---


@router.post(
    "",
    response_model=PublishIssueResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
@limiter.limit(settings.publish_rate_limit)
async def publish_issue(
    request: Request,  # noqa: ARG001 - required by the rate limiter
    data: PublishIssueRequest,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
) -> Response:
    """
    Publish a newsletter issue to every confirmed subscriber.

    Succeeds once the issue and its delivery tasks are durably queued; the
    emails are sent later by the delivery worker. Retrying with the same
    idempotency key returns the first response unchanged.
    """
    # Read before begin(): a replay rolls back and expires loaded objects
    user_id = user.id

    idempotency = IdempotencyService(db)
    outcome = await idempotency.begin(user_id, data.idempotency_key)
    if isinstance(outcome, Replay):
        return outcome.response.to_response()

    issue_id = await IssuePublisher(db).publish(
        title=data.title,
        text_content=data.text_content,
        html_content=data.html_content,
    )

    response = JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=PublishIssueResponse(
            issue_id=str(issue_id),
            status="accepted",
            message=ACCEPTED_MESSAGE,
        ).model_dump(),
    )
    await idempotency.complete(outcome.fingerprint, SavedResponse.from_response(response))
    return response


# --- Delivery Status ---


@router.get(
    "/{issue_id}/deliveries",
    response_model=DeliveryStatusResponse,
    status_code=status.HTTP_200_OK,
)
async def get_delivery_status(
    issue_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),  # noqa: ARG001
) -> DeliveryStatusResponse:
    """Pending and permanently failed deliveries for an issue."""
    issue = await db.scalar(
        select(NewsletterIssue.newsletter_issue_id).where(
            NewsletterIssue.newsletter_issue_id == issue_id
        )
    )
    if issue is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error": {
                    "code": "NOT_FOUND",
                    "message": "Newsletter issue not found",
                }
            },
        )

    delivery = await DeliveryQueue(db).delivery_status(issue_id)
    return DeliveryStatusResponse(
        issue_id=str(issue_id),
        pending=delivery.pending,
        failed=[
            FailedDeliveryItem(
                subscriber_email=task.subscriber_email,
                n_retries=task.n_retries,
                failed_at=task.failed_at.isoformat(),
                last_error=task.last_error,
            )
            for task in delivery.failed
        ],
    )
