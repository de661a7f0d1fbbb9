"""Idempotency record model for replaying publish responses."""

from sqlalchemy import (
    TIMESTAMP,
    Column,
    ForeignKey,
    Index,
    LargeBinary,
    SmallInteger,
    String,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID as PG_UUID

from newsletter.database import Base


class IdempotencyRecord(Base):
    """
    Saved response for one (user, idempotency key) fingerprint.

    A row with NULL response columns is a placeholder held by the transaction
    that is still computing the response. Header values are stored as
    latin-1 text so the raw bytes round-trip exactly.
    """

    __tablename__ = "idempotency"

    user_id = Column(
        PG_UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True,
    )
    idempotency_key = Column(String(256), primary_key=True)
    response_status_code = Column(SmallInteger)
    response_headers = Column(JSONB)  # [[name, value], ...] in send order
    response_body = Column(LargeBinary)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=text("NOW()"))

    __table_args__ = (
        Index("idx_idempotency_created", "created_at"),
    )
