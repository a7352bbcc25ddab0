"""Business request table and its payment snapshot columns.

Intake fields are written by the form intake collaborator. The `payment_*`
columns are written only by the snapshot orchestrator; `snapshot_version`
guards those writes against concurrent notifications.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Float, Integer, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column

from payhook.common.db import Base


class ServiceRequest(Base):
    __tablename__ = "service_requests"

    request_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_ref: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    product_type: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    birth_date: Mapped[str | None] = mapped_column(String, nullable=True)
    birth_time: Mapped[str | None] = mapped_column(String, nullable=True)
    birth_place: Mapped[str | None] = mapped_column(String, nullable=True)
    birth_place_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    birth_place_lng: Mapped[float | None] = mapped_column(Float, nullable=True)
    birth_utc_offset_min: Mapped[int | None] = mapped_column(Integer, nullable=True)
    birth_timezone_id: Mapped[str | None] = mapped_column(String, nullable=True)

    payment_provider: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_status: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    payment_status_detail: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    payment_currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    payment_checkout_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    payment_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    payment_link: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_authorized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    snapshot_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
