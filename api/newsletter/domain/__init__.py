"""Domain value types."""

from newsletter.domain.subscriber_email import InvalidSubscriberEmail, SubscriberEmail

__all__ = ["SubscriberEmail", "InvalidSubscriberEmail"]
