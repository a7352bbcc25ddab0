"""notification retention metadata and webhook auth audit

Revision ID: 0002_payhook
Revises: 0001_payhook
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0002_payhook"
down_revision = "0001_payhook"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "notification_events",
        sa.Column("legal_basis", sa.String(), server_default="contract", nullable=False),
    )
    op.add_column(
        "notification_events",
        sa.Column("pii_scope", sa.String(), server_default="minimal", nullable=False),
    )
    op.add_column(
        "notification_events",
        sa.Column(
            "expires_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now() + interval '365 days'"),
            nullable=False,
        ),
    )
    op.create_index("ix_notification_events_expires_at", "notification_events", ["expires_at"])

    op.create_table(
        "webhook_auth_failures",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("correlation_id", sa.String(), nullable=True),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("headers", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("raw_body", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_webhook_auth_failures_provider", "webhook_auth_failures", ["provider"])
    op.create_index("ix_webhook_auth_failures_reason", "webhook_auth_failures", ["reason"])


def downgrade() -> None:
    op.drop_index("ix_webhook_auth_failures_reason", table_name="webhook_auth_failures")
    op.drop_index("ix_webhook_auth_failures_provider", table_name="webhook_auth_failures")
    op.drop_table("webhook_auth_failures")
    op.drop_index("ix_notification_events_expires_at", table_name="notification_events")
    op.drop_column("notification_events", "expires_at")
    op.drop_column("notification_events", "pii_scope")
    op.drop_column("notification_events", "legal_basis")
