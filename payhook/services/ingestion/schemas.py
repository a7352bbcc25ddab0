"""Value objects passed between ingestion stages and API schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from payhook.common.events import NormalizedStatus


class VerificationVerdict(BaseModel):
    """Outcome of authenticating one notification. Never blocks processing."""

    provider: str
    path_secret_ok: bool = True
    signature_ok: bool = False
    fresh: bool = False
    duplicate: bool = False
    reason: str = "ok"
    correlation_id: str | None = None
    resource_id: str | None = None
    ts_ms: int | None = None

    @property
    def accepted(self) -> bool:
        return self.signature_ok and self.fresh and not self.duplicate


class NotificationEnvelope(BaseModel):
    """Routing facts extracted from a provider notification before persistence."""

    event_uid: str
    topic: str | None = None
    action: str | None = None
    payment_id: str | None = None
    checkout_id: str | None = None


class CustomerInfo(BaseModel):
    name: str | None = None
    email: str | None = None
    tax_id: str | None = None
    phone: str | None = None
    address: dict[str, Any] | None = None


class ProviderPayment(BaseModel):
    """Typed subset of a provider payment object, ready for the upsert store."""

    provider: str
    payment_id: str
    checkout_id: str | None = None
    status: str | None = None
    status_detail: str | None = None
    normalized_status: NormalizedStatus = NormalizedStatus.UPDATED
    external_reference: str | None = None
    customer: CustomerInfo = Field(default_factory=CustomerInfo)
    amount: Decimal | None = None
    currency: str | None = None
    created_at: datetime | None = None
    approved_at: datetime | None = None
    updated_at: datetime | None = None
    raw: dict[str, Any] | None = None


class WebhookAck(BaseModel):
    """Small acknowledgement returned to providers with HTTP 200."""

    ok: bool = True
    duplicate: bool = False
    note: str | None = None


class CheckoutCreateRequest(BaseModel):
    """Payload accepted by `POST /internal/checkouts`."""

    request_id: int = Field(gt=0)
    provider: str = Field(pattern="^(mercadopago|pagbank)$")
    amount_cents: int = Field(gt=0)
    currency: str = Field(default="BRL", min_length=3, max_length=3)
    product_name: str | None = None
    payer_name: str | None = None
    payer_email: str | None = None
    return_url: str | None = None


class CheckoutResponse(BaseModel):
    checkout_id: str
    status: str
    link: str
