"""Newsletter issue model."""

from sqlalchemy import TIMESTAMP, Column, Text, text
from sqlalchemy.dialects.postgresql import UUID as PG_UUID

from newsletter.database import Base


class NewsletterIssue(Base):
    """One published broadcast. Rows are never updated."""

    __tablename__ = "newsletter_issues"

    newsletter_issue_id = Column(
        PG_UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    title = Column(Text, nullable=False)
    text_content = Column(Text, nullable=False)
    html_content = Column(Text, nullable=False)
    published_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=text("NOW()"))
