"""Subscription model: the recipient set read at publish time."""

from sqlalchemy import (
    TIMESTAMP,
    CheckConstraint,
    Column,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID

from newsletter.database import Base

CONFIRMED = "confirmed"
PENDING_CONFIRMATION = "pending_confirmation"


class Subscription(Base):
    """Newsletter subscriber. Managed by the subscription flow, read-only here."""

    __tablename__ = "subscriptions"

    id = Column(PG_UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()"))
    email = Column(Text, unique=True, nullable=False)
    name = Column(Text, nullable=False)
    status = Column(Text, nullable=False, server_default=text(f"'{PENDING_CONFIRMATION}'"))
    subscribed_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=text("NOW()"))

    __table_args__ = (
        CheckConstraint(
            f"status IN ('{PENDING_CONFIRMATION}', '{CONFIRMED}')",
            name="ck_subscription_status",
        ),
    )
