"""Access protocol for the issue delivery queue table."""

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from newsletter.models.delivery import IssueDeliveryTask
from newsletter.models.issue import NewsletterIssue

MAX_ERROR_LENGTH = 1000


class TaskKey(Protocol):
    """Anything identifying one queue row: a claimed task or a detached copy."""

    newsletter_issue_id: UUID
    subscriber_email: str
    n_retries: int


def clean_error_text(error: str) -> str:
    """Make an error message storable: PostgreSQL TEXT rejects NUL bytes."""
    return error.replace("\x00", "").strip()[:MAX_ERROR_LENGTH]


@dataclass(frozen=True)
class DeliveryStatus:
    """Snapshot of the outstanding work for one issue."""

    pending: int
    failed: list[IssueDeliveryTask]


class DeliveryQueue:
    """
    Claims and settles delivery tasks.

    A claim is a row lock taken with FOR UPDATE SKIP LOCKED and held by the
    session's transaction until the worker commits. Concurrent workers skip
    rows that are already claimed, and PostgreSQL releases the lock by itself
    if the worker dies mid-attempt, so the task becomes claimable again.

    Settling updates only match while n_retries still holds the value seen at
    claim time, so an attempt is never counted twice.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def dequeue(self, now: datetime) -> IssueDeliveryTask | None:
        """Claim the longest-waiting task that is not failed and is due at `now`."""
        result = await self.db.execute(
            select(IssueDeliveryTask)
            .where(IssueDeliveryTask.failed_at.is_(None))
            .where(IssueDeliveryTask.execute_after <= now)
            .order_by(IssueDeliveryTask.execute_after)
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        return result.scalar_one_or_none()

    async def get_issue(self, issue_id: UUID) -> NewsletterIssue:
        result = await self.db.execute(
            select(NewsletterIssue).where(NewsletterIssue.newsletter_issue_id == issue_id)
        )
        return result.scalar_one()

    async def delete(self, task: TaskKey) -> None:
        """Remove a delivered task."""
        await self.db.execute(
            delete(IssueDeliveryTask)
            .where(IssueDeliveryTask.newsletter_issue_id == task.newsletter_issue_id)
            .where(IssueDeliveryTask.subscriber_email == task.subscriber_email)
            .execution_options(synchronize_session=False)
        )

    async def schedule_retry(
        self,
        task: TaskKey,
        n_retries: int,
        execute_after: datetime,
        error: str,
    ) -> None:
        """Record a failed attempt and make the task due again at `execute_after`."""
        await self._settle(task, n_retries=n_retries, execute_after=execute_after, error=error)

    async def mark_failed(
        self,
        task: TaskKey,
        n_retries: int,
        now: datetime,
        error: str,
    ) -> None:
        """Move a task to the terminal failed state; it will never be claimed again."""
        await self._settle(task, n_retries=n_retries, failed_at=now, error=error)

    async def record_attempt(
        self,
        task: TaskKey,
        n_retries: int,
        error: str,
        execute_after: datetime | None = None,
        failed_at: datetime | None = None,
    ) -> bool:
        """
        Count an attempt from outside the transaction that claimed the task.

        Used when the claiming transaction could not settle the attempt.

        Returns:
            False if the row is gone or the attempt was already counted
        """
        return await self._settle(
            task,
            n_retries=n_retries,
            execute_after=execute_after,
            failed_at=failed_at,
            error=error,
        )

    async def _settle(
        self,
        task: TaskKey,
        n_retries: int,
        error: str,
        execute_after: datetime | None = None,
        failed_at: datetime | None = None,
    ) -> bool:
        values = {"n_retries": n_retries, "last_error": clean_error_text(error)}
        if execute_after is not None:
            values["execute_after"] = execute_after
        if failed_at is not None:
            values["failed_at"] = failed_at

        result = await self.db.execute(
            update(IssueDeliveryTask)
            .where(IssueDeliveryTask.newsletter_issue_id == task.newsletter_issue_id)
            .where(IssueDeliveryTask.subscriber_email == task.subscriber_email)
            .where(IssueDeliveryTask.n_retries == task.n_retries)
            .where(IssueDeliveryTask.failed_at.is_(None))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def delivery_status(self, issue_id: UUID) -> DeliveryStatus:
        pending = await self.db.scalar(
            select(func.count())
            .select_from(IssueDeliveryTask)
            .where(IssueDeliveryTask.newsletter_issue_id == issue_id)
            .where(IssueDeliveryTask.failed_at.is_(None))
        )
        result = await self.db.execute(
            select(IssueDeliveryTask)
            .where(IssueDeliveryTask.newsletter_issue_id == issue_id)
            .where(IssueDeliveryTask.failed_at.is_not(None))
            .order_by(IssueDeliveryTask.failed_at)
        )
        return DeliveryStatus(pending=pending or 0, failed=list(result.scalars().all()))
