"""Product job attempts and delayed follow-up triggers."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime, Index, Integer, String, UniqueConstraint, func, text
from sqlalchemy.orm import Mapped, mapped_column

from payhook.common.db import Base


class ProductJob(Base):
    """One attempt at running a product workflow for a request and trigger."""

    __tablename__ = "product_jobs"
    __table_args__ = (
        UniqueConstraint("request_id", "product_type", "trigger_status", "attempt", name="uq_product_jobs_attempt"),
        # At most one success per (request, product, trigger).
        Index(
            "uq_product_jobs_succeeded",
            "request_id",
            "product_type",
            "trigger_status",
            unique=True,
            postgresql_where=text("status = 'SUCCEEDED'"),
            sqlite_where=text("status = 'SUCCEEDED'"),
        ),
    )

    job_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    request_id: Mapped[int] = mapped_column(Integer, index=True)
    product_type: Mapped[str] = mapped_column(String)
    trigger_status: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, index=True)
    attempt: Mapped[int] = mapped_column(Integer)
    enrichment_http_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    enrichment_attempts: Mapped[int | None] = mapped_column(Integer, nullable=True)
    enrichment_duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    webhook_http_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    webhook_attempts: Mapped[int | None] = mapped_column(Integer, nullable=True)
    webhook_duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(String, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ScheduledTrigger(Base):
    """A follow-up notification due at a fixed time unless the payment moves on."""

    __tablename__ = "scheduled_triggers"
    __table_args__ = (
        UniqueConstraint("request_id", "product_type", "kind", name="uq_scheduled_triggers_kind"),
        Index("ix_scheduled_triggers_due", "state", "due_at"),
    )

    sched_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    request_id: Mapped[int] = mapped_column(Integer, index=True)
    product_type: Mapped[str] = mapped_column(String)
    kind: Mapped[str] = mapped_column(String)
    provider: Mapped[str | None] = mapped_column(String, nullable=True)
    due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    state: Mapped[str] = mapped_column(String, default="pending")
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    fired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
