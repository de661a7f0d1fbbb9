"""Pydantic schemas for request/response validation."""

from newsletter.schemas.newsletter import (
    DeliveryStatusResponse,
    FailedDeliveryItem,
    PublishIssueRequest,
    PublishIssueResponse,
)

__all__ = [
    "PublishIssueRequest",
    "PublishIssueResponse",
    "FailedDeliveryItem",
    "DeliveryStatusResponse",
]
