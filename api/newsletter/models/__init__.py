"""Database models for the newsletter service."""

from newsletter.models.delivery import IssueDeliveryTask
from newsletter.models.idempotency import IdempotencyRecord
from newsletter.models.issue import NewsletterIssue
from newsletter.models.subscription import Subscription
from newsletter.models.user import APIKey, User

__all__ = [
    "User",
    "APIKey",
    "Subscription",
    "NewsletterIssue",
    "IssueDeliveryTask",
    "IdempotencyRecord",
]
