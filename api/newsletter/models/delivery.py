"""Delivery queue model: one row per (issue, recipient) still owed an email."""

from sqlalchemy import (
    TIMESTAMP,
    Column,
    ForeignKey,
    Index,
    Integer,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from newsletter.database import Base


class IssueDeliveryTask(Base):
    """
    Pending or failed delivery of an issue to one subscriber.

    Delivered tasks are deleted. Tasks that exhausted their retries keep
    their row with failed_at set and are never claimed again.
    """

    __tablename__ = "issue_delivery_queue"

    newsletter_issue_id = Column(
        PG_UUID(as_uuid=True),
        ForeignKey("newsletter_issues.newsletter_issue_id", ondelete="CASCADE"),
        primary_key=True,
    )
    subscriber_email = Column(Text, primary_key=True)
    n_retries = Column(Integer, nullable=False, server_default=text("0"))
    execute_after = Column(TIMESTAMP(timezone=True), nullable=False, server_default=text("NOW()"))
    failed_at = Column(TIMESTAMP(timezone=True))
    last_error = Column(Text)

    __table_args__ = (
        Index(
            "idx_delivery_queue_eligible",
            execute_after,
            postgresql_where=(failed_at.is_(None)),
        ),
    )

    issue = relationship("NewsletterIssue")
