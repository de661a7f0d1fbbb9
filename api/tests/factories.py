"""
Test doubles and helpers shared by the delivery and publishing tests.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from newsletter.domain.subscriber_email import SubscriberEmail
from newsletter.models.delivery import IssueDeliveryTask
from newsletter.models.idempotency import IdempotencyRecord
from newsletter.models.issue import NewsletterIssue


class FakeClock:
    """Controllable clock for the delivery worker.

    Starts slightly ahead of real time so rows stamped with the database's
    NOW() are already due.
    """

    def __init__(self) -> None:
        self.now = datetime.now(timezone.utc) + timedelta(seconds=1)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


class ScriptedEmailSender:
    """Email transport double.

    Each recipient gets a list of outcomes consumed one per call: None means
    success, an exception instance is raised. Once a script runs out, the
    last outcome repeats. Recipients without a script always succeed.
    """

    def __init__(self, scripts: dict[str, list[BaseException | None]] | None = None):
        self.scripts = {email: list(outcomes) for email, outcomes in (scripts or {}).items()}
        self.calls: list[dict[str, str]] = []

    async def send_email(
        self,
        recipient: SubscriberEmail,
        subject: str,
        html_content: str,
        text_content: str,
    ) -> None:
        email = str(recipient)
        self.calls.append(
            {
                "recipient": email,
                "subject": subject,
                "html_content": html_content,
                "text_content": text_content,
            }
        )
        outcomes = self.scripts.get(email)
        if not outcomes:
            return
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if outcome is not None:
            raise outcome

    def attempts_for(self, email: str) -> int:
        return sum(1 for call in self.calls if call["recipient"] == email)


class BlockingSender:
    """Email transport double whose sends wait until `release` is set."""

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.calls: list[str] = []

    async def send_email(
        self,
        recipient: SubscriberEmail,
        subject: str,
        html_content: str,
        text_content: str,
    ) -> None:
        self.calls.append(str(recipient))
        self.started.set()
        await self.release.wait()


async def count_rows(session: AsyncSession, model) -> int:
    return await session.scalar(select(func.count()).select_from(model))


async def count_issues(session: AsyncSession) -> int:
    return await count_rows(session, NewsletterIssue)


async def count_tasks(session: AsyncSession) -> int:
    return await count_rows(session, IssueDeliveryTask)


async def count_idempotency_records(session: AsyncSession) -> int:
    return await count_rows(session, IdempotencyRecord)


async def fetch_task(
    session_factory: async_sessionmaker[AsyncSession],
    issue_id: UUID,
    email: str,
) -> IssueDeliveryTask | None:
    """Read a task in a fresh session so no cached state leaks in."""
    async with session_factory() as session:
        result = await session.execute(
            select(IssueDeliveryTask)
            .where(IssueDeliveryTask.newsletter_issue_id == issue_id)
            .where(IssueDeliveryTask.subscriber_email == email)
        )
        return result.scalar_one_or_none()
