"""initial payhook schema

Revision ID: 0001_payhook
Revises:
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_payhook"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "service_requests",
        sa.Column("request_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("request_ref", sa.String(), nullable=True),
        sa.Column("product_type", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("birth_date", sa.String(), nullable=True),
        sa.Column("birth_time", sa.String(), nullable=True),
        sa.Column("birth_place", sa.String(), nullable=True),
        sa.Column("birth_place_lat", sa.Float(), nullable=True),
        sa.Column("birth_place_lng", sa.Float(), nullable=True),
        sa.Column("birth_utc_offset_min", sa.Integer(), nullable=True),
        sa.Column("birth_timezone_id", sa.String(), nullable=True),
        sa.Column("payment_provider", sa.String(), nullable=True),
        sa.Column("payment_status", sa.String(), nullable=True),
        sa.Column("payment_status_detail", sa.String(), nullable=True),
        sa.Column("payment_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("payment_currency", sa.String(length=3), nullable=True),
        sa.Column("payment_checkout_id", sa.String(), nullable=True),
        sa.Column("payment_id", sa.String(), nullable=True),
        sa.Column("payment_link", sa.String(), nullable=True),
        sa.Column("payment_authorized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("snapshot_version", sa.Integer(), server_default="0", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("request_id"),
        sa.UniqueConstraint("request_ref"),
    )
    op.create_index("ix_service_requests_product_type", "service_requests", ["product_type"])
    op.create_index("ix_service_requests_payment_status", "service_requests", ["payment_status"])
    op.create_index("ix_service_requests_payment_checkout_id", "service_requests", ["payment_checkout_id"])
    op.create_index("ix_service_requests_payment_id", "service_requests", ["payment_id"])

    op.create_table(
        "notification_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("provider_event_uid", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("topic", sa.String(), nullable=True),
        sa.Column("action", sa.String(), nullable=True),
        sa.Column("provider_payment_id", sa.String(), nullable=True),
        sa.Column("provider_checkout_id", sa.String(), nullable=True),
        sa.Column("headers", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("query", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("raw_body", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("signature_ok", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("verification_reason", sa.String(), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_notification_events_provider_event_uid", "notification_events", ["provider_event_uid"], unique=True
    )
    op.create_index("ix_notification_events_provider", "notification_events", ["provider"])
    op.create_index("ix_notification_events_provider_payment_id", "notification_events", ["provider_payment_id"])
    op.create_index("ix_notification_events_provider_checkout_id", "notification_events", ["provider_checkout_id"])

    op.create_table(
        "payment_records",
        sa.Column("payment_id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("checkout_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=True),
        sa.Column("status_detail", sa.String(), nullable=True),
        sa.Column("normalized_status", sa.String(), nullable=False),
        sa.Column("external_reference", sa.String(), nullable=True),
        sa.Column("customer_name", sa.String(), nullable=True),
        sa.Column("customer_email", sa.String(), nullable=True),
        sa.Column("customer_tax_id", sa.String(), nullable=True),
        sa.Column("customer_phone", sa.String(), nullable=True),
        sa.Column("customer_address", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=True),
        sa.Column("provider_created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("provider_approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("provider_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("raw", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("payment_id"),
    )
    op.create_index("ix_payment_records_checkout_id", "payment_records", ["checkout_id"])
    op.create_index("ix_payment_records_normalized_status", "payment_records", ["normalized_status"])
    op.create_index("ix_payment_records_external_reference", "payment_records", ["external_reference"])

    op.create_table(
        "checkout_records",
        sa.Column("checkout_id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("request_id", sa.Integer(), nullable=False),
        sa.Column("product_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=True),
        sa.Column("link", sa.String(), nullable=True),
        sa.Column("customer", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("raw", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("checkout_id"),
    )
    op.create_index("ix_checkout_records_request_id", "checkout_records", ["request_id"])

    op.create_table(
        "product_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("request_id", sa.Integer(), nullable=False),
        sa.Column("product_type", sa.String(), nullable=False),
        sa.Column("trigger_status", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False),
        sa.Column("enrichment_http_status", sa.Integer(), nullable=True),
        sa.Column("enrichment_attempts", sa.Integer(), nullable=True),
        sa.Column("enrichment_duration_ms", sa.Integer(), nullable=True),
        sa.Column("webhook_http_status", sa.Integer(), nullable=True),
        sa.Column("webhook_attempts", sa.Integer(), nullable=True),
        sa.Column("webhook_duration_ms", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("job_id"),
        sa.UniqueConstraint("request_id", "product_type", "trigger_status", "attempt", name="uq_product_jobs_attempt"),
    )
    op.create_index("ix_product_jobs_request_id", "product_jobs", ["request_id"])
    op.create_index("ix_product_jobs_status", "product_jobs", ["status"])
    op.create_index(
        "uq_product_jobs_succeeded",
        "product_jobs",
        ["request_id", "product_type", "trigger_status"],
        unique=True,
        postgresql_where=sa.text("status = 'SUCCEEDED'"),
    )

    op.create_table(
        "scheduled_triggers",
        sa.Column("sched_id", sa.String(), nullable=False),
        sa.Column("request_id", sa.Integer(), nullable=False),
        sa.Column("product_type", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=True),
        sa.Column("due_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("state", sa.String(), server_default="pending", nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("fired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_reason", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("sched_id"),
        sa.UniqueConstraint("request_id", "product_type", "kind", name="uq_scheduled_triggers_kind"),
    )
    op.create_index("ix_scheduled_triggers_request_id", "scheduled_triggers", ["request_id"])
    op.create_index("ix_scheduled_triggers_due", "scheduled_triggers", ["state", "due_at"])


def downgrade() -> None:
    op.drop_index("ix_scheduled_triggers_due", table_name="scheduled_triggers")
    op.drop_index("ix_scheduled_triggers_request_id", table_name="scheduled_triggers")
    op.drop_table("scheduled_triggers")
    op.drop_index("uq_product_jobs_succeeded", table_name="product_jobs")
    op.drop_index("ix_product_jobs_status", table_name="product_jobs")
    op.drop_index("ix_product_jobs_request_id", table_name="product_jobs")
    op.drop_table("product_jobs")
    op.drop_index("ix_checkout_records_request_id", table_name="checkout_records")
    op.drop_table("checkout_records")
    op.drop_index("ix_payment_records_external_reference", table_name="payment_records")
    op.drop_index("ix_payment_records_normalized_status", table_name="payment_records")
    op.drop_index("ix_payment_records_checkout_id", table_name="payment_records")
    op.drop_table("payment_records")
    op.drop_index("ix_notification_events_provider_checkout_id", table_name="notification_events")
    op.drop_index("ix_notification_events_provider_payment_id", table_name="notification_events")
    op.drop_index("ix_notification_events_provider", table_name="notification_events")
    op.drop_index("ix_notification_events_provider_event_uid", table_name="notification_events")
    op.drop_table("notification_events")
    op.drop_index("ix_service_requests_payment_id", table_name="service_requests")
    op.drop_index("ix_service_requests_payment_checkout_id", table_name="service_requests")
    op.drop_index("ix_service_requests_payment_status", table_name="service_requests")
    op.drop_index("ix_service_requests_product_type", table_name="service_requests")
    op.drop_table("service_requests")
