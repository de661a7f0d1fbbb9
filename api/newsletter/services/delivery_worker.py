"""Background worker draining the issue delivery queue.

Each task is claimed, attempted and settled in its own transaction:

    Pending -> InFlight -> Delivered (row deleted)
                        -> Retryable (back to Pending after backoff)
                        -> Failed (row kept with failed_at, never retried)

A failure only ever touches the task being attempted, so one bad recipient
cannot hold up the rest of the queue. If the claiming transaction cannot
record the outcome, the attempt is still counted in a fresh transaction.
"""

import asyncio
import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from newsletter.config import Settings
from newsletter.database import AsyncSessionLocal
from newsletter.domain.subscriber_email import InvalidSubscriberEmail, SubscriberEmail
from newsletter.errors import FailureKind, TransportError, TransportTransientError
from newsletter.services.delivery_queue import DeliveryQueue

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class EmailSender(Protocol):
    async def send_email(
        self,
        recipient: SubscriberEmail,
        subject: str,
        html_content: str,
        text_content: str,
    ) -> None: ...


class ExecutionOutcome(enum.Enum):
    TASK_COMPLETED = "task_completed"
    EMPTY_QUEUE = "empty_queue"


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how far apart a transiently failing task is attempted.

    Delays double from one attempt to the next and must stay below
    `backoff_max` for every retry the policy allows.
    """

    max_retries: int = 5
    backoff_base: timedelta = timedelta(seconds=5)
    backoff_max: timedelta = timedelta(hours=1)

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.backoff_base <= timedelta(0):
            raise ValueError("backoff_base must be positive")
        if self.max_retries >= 2 and self.backoff(self.max_retries - 1) >= self.backoff_max:
            raise ValueError(
                f"backoff_max ({self.backoff_max}) must exceed the last retry delay "
                f"({self.backoff_base * 2 ** (self.max_retries - 2)}) for {self.max_retries} attempts"
            )

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.delivery_max_retries,
            backoff_base=timedelta(seconds=settings.delivery_backoff_base_seconds),
            backoff_max=timedelta(seconds=settings.delivery_backoff_max_seconds),
        )

    def backoff(self, attempt: int) -> timedelta:
        """Delay before the attempt following attempt number `attempt` (1-based)."""
        return min(self.backoff_base * 2 ** (attempt - 1), self.backoff_max)


@dataclass
class _Attempt:
    """Claimed task state that outlives a rolled-back session."""

    newsletter_issue_id: UUID
    subscriber_email: str
    n_retries: int
    delivered: bool = False
    error: str | None = None


async def try_execute_task(
    session_factory: async_sessionmaker[AsyncSession],
    email_client: EmailSender,
    policy: RetryPolicy,
    clock: Clock = utc_now,
) -> ExecutionOutcome:
    """
    Claim and attempt a single delivery task.

    The row lock taken by the claim is held for the duration of the email
    API call and released on commit, or by PostgreSQL if the process dies.

    Raises:
        SQLAlchemyError: if neither the claiming transaction nor a fresh one
            could record the attempt
    """
    async with session_factory() as session:
        queue = DeliveryQueue(session)
        task = await queue.dequeue(clock())
        if task is None:
            await session.rollback()
            return ExecutionOutcome.EMPTY_QUEUE

        attempt = _Attempt(task.newsletter_issue_id, task.subscriber_email, task.n_retries)
        try:
            await _attempt_delivery(queue, attempt, email_client, policy, clock)
            await session.commit()
            return ExecutionOutcome.TASK_COMPLETED
        except SQLAlchemyError:
            logger.exception(
                "Could not settle delivery of issue %s to %s",
                attempt.newsletter_issue_id,
                attempt.subscriber_email,
            )
            await session.rollback()

    await _record_unsettled_attempt(session_factory, attempt, policy, clock())
    return ExecutionOutcome.TASK_COMPLETED


async def _attempt_delivery(
    queue: DeliveryQueue,
    attempt: _Attempt,
    email_client: EmailSender,
    policy: RetryPolicy,
    clock: Clock,
) -> None:
    try:
        recipient = SubscriberEmail.parse(attempt.subscriber_email)
    except InvalidSubscriberEmail as exc:
        # Retrying cannot fix a malformed address
        logger.error(
            "Delivery of issue %s to %r failed permanently: invalid recipient",
            attempt.newsletter_issue_id,
            attempt.subscriber_email,
        )
        attempt.error = str(exc)
        await queue.mark_failed(attempt, attempt.n_retries, clock(), attempt.error)
        return

    issue = await queue.get_issue(attempt.newsletter_issue_id)
    try:
        await email_client.send_email(
            recipient,
            issue.title,
            issue.html_content,
            issue.text_content,
        )
    except TransportError as exc:
        attempt.error = str(exc)
        await _settle_failure(queue, attempt, exc, policy, clock())
    except Exception as exc:
        logger.exception("Unexpected error sending to %s", recipient)
        failure = TransportTransientError(f"Unexpected error: {exc!r}")
        attempt.error = str(failure)
        await _settle_failure(queue, attempt, failure, policy, clock())
    else:
        attempt.delivered = True
        await queue.delete(attempt)
        logger.info("Delivered issue %s to %s", attempt.newsletter_issue_id, recipient)


async def _settle_failure(
    queue: DeliveryQueue,
    attempt: _Attempt,
    exc: TransportError,
    policy: RetryPolicy,
    now: datetime,
) -> None:
    attempts = attempt.n_retries + 1
    if exc.kind is FailureKind.TRANSIENT and attempts < policy.max_retries:
        delay = policy.backoff(attempts)
        await queue.schedule_retry(attempt, attempts, now + delay, str(exc))
        logger.warning(
            "Transient failure delivering issue %s to %s (attempt %d/%d): %s - retrying in %ss",
            attempt.newsletter_issue_id,
            attempt.subscriber_email,
            attempts,
            policy.max_retries,
            exc,
            delay.total_seconds(),
        )
        return

    reason = "rejected by email API" if exc.kind is FailureKind.PERMANENT else "retries exhausted"
    await queue.mark_failed(attempt, attempts, now, str(exc))
    logger.error(
        "Delivery of issue %s to %s failed permanently after %d attempt(s) (%s): %s",
        attempt.newsletter_issue_id,
        attempt.subscriber_email,
        attempts,
        reason,
        exc,
    )


async def _record_unsettled_attempt(
    session_factory: async_sessionmaker[AsyncSession],
    attempt: _Attempt,
    policy: RetryPolicy,
    now: datetime,
) -> None:
    """Count an attempt whose claiming transaction rolled back.

    Without this the task would come back with an unchanged retry count and
    be sent again forever.
    """
    async with session_factory() as session:
        queue = DeliveryQueue(session)
        if attempt.delivered:
            await queue.delete(attempt)
            await session.commit()
            return

        attempts = attempt.n_retries + 1
        error = f"Could not record delivery outcome; last error: {attempt.error or 'none'}"
        if attempts < policy.max_retries:
            recorded = await queue.record_attempt(
                attempt, attempts, error, execute_after=now + policy.backoff(attempts)
            )
        else:
            recorded = await queue.record_attempt(attempt, attempts, error, failed_at=now)
        await session.commit()

    if recorded:
        logger.warning(
            "Recorded attempt %d/%d for issue %s to %s outside its claim",
            attempts,
            policy.max_retries,
            attempt.newsletter_issue_id,
            attempt.subscriber_email,
        )


class DeliveryWorker:
    """Polling loop around try_execute_task with an interruptible idle wait."""

    def __init__(
        self,
        email_client: EmailSender,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        policy: RetryPolicy | None = None,
        idle_seconds: float = 10.0,
        error_sleep_seconds: float = 1.0,
        clock: Clock = utc_now,
    ):
        self.email_client = email_client
        self.session_factory = session_factory
        self.policy = policy or RetryPolicy()
        self.idle_seconds = idle_seconds
        self.error_sleep_seconds = error_sleep_seconds
        self.clock = clock
        self._stop = asyncio.Event()

    @classmethod
    def from_settings(cls, settings: Settings, email_client: EmailSender) -> "DeliveryWorker":
        return cls(
            email_client=email_client,
            policy=RetryPolicy.from_settings(settings),
            idle_seconds=settings.worker_idle_seconds,
            error_sleep_seconds=settings.worker_error_sleep_seconds,
        )

    async def run(self) -> None:
        """Process tasks until stop() is called. An in-flight attempt always finishes."""
        logger.info("Delivery worker started")
        while not self._stop.is_set():
            try:
                outcome = await try_execute_task(
                    self.session_factory, self.email_client, self.policy, self.clock
                )
            except Exception:
                logger.exception("Delivery worker iteration failed")
                await self._wait(self.error_sleep_seconds)
                continue
            if outcome is ExecutionOutcome.EMPTY_QUEUE:
                await self._wait(self.idle_seconds)
        logger.info("Delivery worker stopped")

    def stop(self) -> None:
        """Stop claiming new tasks and wake the loop if it is idle."""
        self._stop.set()

    async def _wait(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return
