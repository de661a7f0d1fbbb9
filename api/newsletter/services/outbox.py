"""Transactional outbox: store an issue together with its delivery tasks."""

import logging
from collections.abc import Iterable
from uuid import UUID, uuid4

from sqlalchemy import insert, literal, select
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from newsletter.errors import PersistenceError
from newsletter.models.delivery import IssueDeliveryTask
from newsletter.models.issue import NewsletterIssue
from newsletter.models.subscription import CONFIRMED, Subscription

logger = logging.getLogger(__name__)


class IssuePublisher:
    """
    Writes a newsletter issue and one delivery task per recipient.

    Runs inside the transaction opened by IdempotencyService.begin and never
    commits on its own: the issue, its queue rows and the saved response
    become visible together or not at all.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def publish(
        self,
        title: str,
        text_content: str,
        html_content: str,
        recipients: Iterable[str] | None = None,
    ) -> UUID:
        """
        Store the issue and enqueue its deliveries.

        Args:
            title: Email subject
            text_content: Plain-text body
            html_content: HTML body
            recipients: Explicit recipient addresses. When omitted, the
                subscribers confirmed at this instant are enqueued.

        Returns:
            The new issue ID

        Raises:
            PersistenceError: on any storage fault; the caller must roll back
        """
        issue_id = uuid4()
        try:
            await self.db.execute(
                insert(NewsletterIssue).values(
                    newsletter_issue_id=issue_id,
                    title=title,
                    text_content=text_content,
                    html_content=html_content,
                )
            )
            if recipients is None:
                enqueued = await self._enqueue_confirmed_subscribers(issue_id)
            else:
                enqueued = await self._enqueue_recipients(issue_id, recipients)
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to store newsletter issue and delivery tasks") from exc

        logger.info("Issue %s stored with %d delivery tasks", issue_id, enqueued)
        return issue_id

    async def _enqueue_confirmed_subscribers(self, issue_id: UUID) -> int:
        confirmed = select(literal(issue_id, PG_UUID(as_uuid=True)), Subscription.email).where(
            Subscription.status == CONFIRMED
        )
        result = await self.db.execute(
            insert(IssueDeliveryTask.__table__).from_select(
                ["newsletter_issue_id", "subscriber_email"], confirmed
            )
        )
        return result.rowcount

    async def _enqueue_recipients(self, issue_id: UUID, recipients: Iterable[str]) -> int:
        # Duplicate addresses would collide on the primary key
        unique = list(dict.fromkeys(recipients))
        if not unique:
            return 0
        await self.db.execute(
            insert(IssueDeliveryTask),
            [
                {"newsletter_issue_id": issue_id, "subscriber_email": email}
                for email in unique
            ],
        )
        return len(unique)
