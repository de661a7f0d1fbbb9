"""Initial schema."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "20261019_01_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")

    op.create_table(
        "users",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("username", sa.String(), nullable=False),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("NOW()"),
        ),
        sa.CheckConstraint(
            "username ~ '^[a-z0-9_]{3,32}$'",
            name="ck_username_format",
        ),
        sa.UniqueConstraint("username", name="uq_users_username"),
    )

    op.create_table(
        "api_keys",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("key_hash", sa.Text(), nullable=False),
        sa.Column("key_prefix", sa.String(length=12), nullable=False),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("NOW()"),
        ),
        sa.Column("revoked_at", sa.TIMESTAMP(timezone=True), nullable=True),
    )

    op.create_table(
        "subscriptions",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("email", sa.Text(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column(
            "status",
            sa.Text(),
            nullable=False,
            server_default=sa.text("'pending_confirmation'"),
        ),
        sa.Column(
            "subscribed_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.CheckConstraint(
            "status IN ('pending_confirmation', 'confirmed')",
            name="ck_subscription_status",
        ),
        sa.UniqueConstraint("email", name="uq_subscriptions_email"),
    )

    op.create_table(
        "newsletter_issues",
        sa.Column(
            "newsletter_issue_id",
            postgresql.UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("text_content", sa.Text(), nullable=False),
        sa.Column("html_content", sa.Text(), nullable=False),
        sa.Column(
            "published_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
    )

    op.create_table(
        "issue_delivery_queue",
        sa.Column(
            "newsletter_issue_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("newsletter_issues.newsletter_issue_id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("subscriber_email", sa.Text(), primary_key=True),
        sa.Column("n_retries", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "execute_after",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column("failed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
    )

    op.create_index(
        "idx_delivery_queue_eligible",
        "issue_delivery_queue",
        ["execute_after"],
        postgresql_where=sa.text("failed_at IS NULL"),
    )

    op.create_table(
        "idempotency",
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("idempotency_key", sa.String(length=256), primary_key=True),
        sa.Column("response_status_code", sa.SmallInteger(), nullable=True),
        sa.Column("response_headers", postgresql.JSONB(), nullable=True),
        sa.Column("response_body", sa.LargeBinary(), nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
    )

    op.create_index(
        "idx_idempotency_created",
        "idempotency",
        ["created_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_idempotency_created", table_name="idempotency")
    op.drop_table("idempotency")

    op.execute("DROP INDEX IF EXISTS idx_delivery_queue_eligible")
    op.drop_table("issue_delivery_queue")

    op.drop_table("newsletter_issues")
    op.drop_table("subscriptions")
    op.drop_table("api_keys")
    op.drop_table("users")

    op.execute("DROP EXTENSION IF EXISTS pgcrypto")
