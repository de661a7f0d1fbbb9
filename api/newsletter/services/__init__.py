"""Services for the newsletter API and delivery worker."""

from newsletter.services.delivery_queue import DeliveryQueue, DeliveryStatus
from newsletter.services.delivery_worker import (
    DeliveryWorker,
    ExecutionOutcome,
    RetryPolicy,
    try_execute_task,
)
from newsletter.services.idempotency import (
    Admitted,
    IdempotencyService,
    Replay,
    SavedResponse,
)
from newsletter.services.outbox import IssuePublisher

__all__ = [
    "IdempotencyService",
    "Admitted",
    "Replay",
    "SavedResponse",
    "IssuePublisher",
    "DeliveryQueue",
    "DeliveryStatus",
    "DeliveryWorker",
    "ExecutionOutcome",
    "RetryPolicy",
    "try_execute_task",
]
