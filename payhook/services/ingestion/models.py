"""Ingestion persistence models.

`notification_events` is the append-only audit log used for dedupe,
`payment_records` the consolidated per-payment view, and `checkout_records`
the checkout attempts created for business requests.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, Integer, Numeric, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from payhook.common.db import Base


EVENT_RETENTION = timedelta(days=365)


def _default_expiry() -> datetime:
    return datetime.now(timezone.utc) + EVENT_RETENTION


class NotificationEvent(Base):
    """One inbound provider notification, stored exactly once."""

    __tablename__ = "notification_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    provider_event_uid: Mapped[str] = mapped_column(String, unique=True, index=True)
    provider: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str | None] = mapped_column(String, nullable=True)
    action: Mapped[str | None] = mapped_column(String, nullable=True)
    provider_payment_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    provider_checkout_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    headers: Mapped[dict | None] = mapped_column(JSONB(none_as_null=True), nullable=True)
    query: Mapped[dict | None] = mapped_column(JSONB(none_as_null=True), nullable=True)
    raw_body: Mapped[dict | None] = mapped_column(JSONB(none_as_null=True), nullable=True)
    signature_ok: Mapped[bool] = mapped_column(Boolean, default=False)
    verification_reason: Mapped[str] = mapped_column(String)
    legal_basis: Mapped[str] = mapped_column(String, default="contract")
    pii_scope: Mapped[str] = mapped_column(String, default="minimal")
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_default_expiry, index=True)


class PaymentRecord(Base):
    """Latest known state of one provider-side payment."""

    __tablename__ = "payment_records"

    payment_id: Mapped[str] = mapped_column(String, primary_key=True)
    provider: Mapped[str] = mapped_column(String)
    checkout_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    status: Mapped[str | None] = mapped_column(String, nullable=True)
    status_detail: Mapped[str | None] = mapped_column(String, nullable=True)
    normalized_status: Mapped[str] = mapped_column(String, index=True)
    external_reference: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    customer_name: Mapped[str | None] = mapped_column(String, nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String, nullable=True)
    customer_tax_id: Mapped[str | None] = mapped_column(String, nullable=True)
    customer_phone: Mapped[str | None] = mapped_column(String, nullable=True)
    customer_address: Mapped[dict | None] = mapped_column(JSONB(none_as_null=True), nullable=True)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    provider_created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    provider_approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    provider_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    raw: Mapped[dict | None] = mapped_column(JSONB(none_as_null=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class CheckoutRecord(Base):
    """One checkout/preference created at a provider for a business request."""

    __tablename__ = "checkout_records"

    checkout_id: Mapped[str] = mapped_column(String, primary_key=True)
    provider: Mapped[str] = mapped_column(String)
    request_id: Mapped[int] = mapped_column(Integer, index=True)
    product_type: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    amount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    link: Mapped[str | None] = mapped_column(String, nullable=True)
    customer: Mapped[dict | None] = mapped_column(JSONB(none_as_null=True), nullable=True)
    raw: Mapped[dict | None] = mapped_column(JSONB(none_as_null=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class WebhookAuthFailure(Base):
    """Rate-limited audit row for notifications that failed verification."""

    __tablename__ = "webhook_auth_failures"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    provider: Mapped[str] = mapped_column(String, index=True)
    correlation_id: Mapped[str | None] = mapped_column(String, nullable=True)
    reason: Mapped[str] = mapped_column(String, index=True)
    headers: Mapped[dict | None] = mapped_column(JSONB(none_as_null=True), nullable=True)
    raw_body: Mapped[dict | None] = mapped_column(JSONB(none_as_null=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
