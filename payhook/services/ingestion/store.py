"""Persistence helpers for notifications, payments and checkouts.

Every write goes through a single `INSERT ... ON CONFLICT` statement so
concurrent webhook deliveries converge without application-level locks. The
helpers never commit; the calling service owns the transaction.
"""

from datetime import datetime, timezone
from typing import Any, Mapping

from sqlalchemy import func, select, update

from payhook.common.db import dialect_insert
from payhook.common.sanitize import (
    mask_email,
    mask_phone,
    mask_tax_id,
    sanitize_headers,
    sanitize_json,
    sanitize_query,
)
from payhook.services.ingestion.models import CheckoutRecord, NotificationEvent, PaymentRecord
from payhook.services.ingestion.schemas import NotificationEnvelope, ProviderPayment, VerificationVerdict


class EventStore:
    """Append-only notification log keyed by `provider_event_uid`."""

    def record(
        self,
        db,
        provider: str,
        envelope: NotificationEnvelope,
        *,
        headers: Mapping[str, str] | None,
        query: Mapping[str, Any] | None,
        body: Any,
        verdict: VerificationVerdict,
    ) -> NotificationEvent | None:
        """Insert once; return the stored row, or `None` when already recorded."""

        stmt = (
            dialect_insert(db, NotificationEvent)
            .values(
                provider_event_uid=envelope.event_uid,
                provider=provider,
                topic=envelope.topic,
                action=envelope.action,
                provider_payment_id=envelope.payment_id,
                provider_checkout_id=envelope.checkout_id,
                headers=sanitize_headers(headers),
                query=sanitize_query(query),
                raw_body=as_document(sanitize_json(body)),
                signature_ok=verdict.signature_ok,
                verification_reason=verdict.reason,
            )
            .on_conflict_do_nothing(index_elements=["provider_event_uid"])
            .returning(NotificationEvent.id)
        )
        event_id = db.execute(stmt).scalar_one_or_none()
        if event_id is None:
            return None
        return db.get(NotificationEvent, event_id)

    def get_by_uid(self, db, event_uid: str) -> NotificationEvent | None:
        return db.execute(
            select(NotificationEvent).where(NotificationEvent.provider_event_uid == event_uid)
        ).scalar_one_or_none()


# Columns that always take the incoming value; everything else is COALESCE(new, old).
ALWAYS_OVERWRITE = ("status", "status_detail", "normalized_status", "raw")
# An untrusted delivery only fills these in while the row has none yet.
STATUS_COLUMNS = ("status", "status_detail", "normalized_status")


class PaymentStore:
    """Merge provider payment snapshots into one row per payment id."""

    def upsert_by_payment_id(self, db, payment: ProviderPayment, *, trusted: bool = True) -> PaymentRecord:
        """Merge `payment` into its row.

        Untrusted snapshots (unverified body, no authoritative fetch) never
        replace a status that is already recorded.
        """

        customer = payment.customer
        values = {
            "payment_id": payment.payment_id,
            "provider": payment.provider,
            "checkout_id": payment.checkout_id,
            "status": payment.status,
            "status_detail": payment.status_detail,
            "normalized_status": payment.normalized_status.value,
            "external_reference": payment.external_reference,
            "customer_name": customer.name,
            "customer_email": mask_email(customer.email) if customer.email else None,
            "customer_tax_id": mask_tax_id(customer.tax_id) if customer.tax_id else None,
            "customer_phone": mask_phone(customer.phone) if customer.phone else None,
            "customer_address": sanitize_json(customer.address) if customer.address else None,
            "amount": payment.amount,
            "currency": payment.currency.upper() if payment.currency else None,
            "provider_created_at": payment.created_at,
            "provider_approved_at": payment.approved_at,
            "provider_updated_at": payment.updated_at,
            "raw": sanitize_json(payment.raw) if payment.raw is not None else None,
            "updated_at": datetime.now(timezone.utc),
        }

        insert_stmt = dialect_insert(db, PaymentRecord).values(**values)
        table = PaymentRecord.__table__
        merged = {}
        for name in values:
            if name == "payment_id":
                continue
            if not trusted and name in STATUS_COLUMNS:
                merged[name] = func.coalesce(table.c[name], insert_stmt.excluded[name])
            elif name in ALWAYS_OVERWRITE or name == "updated_at":
                merged[name] = insert_stmt.excluded[name]
            else:
                merged[name] = func.coalesce(insert_stmt.excluded[name], table.c[name])
        db.execute(insert_stmt.on_conflict_do_update(index_elements=["payment_id"], set_=merged))
        return db.get(PaymentRecord, payment.payment_id, populate_existing=True)

    def get(self, db, payment_id: str) -> PaymentRecord | None:
        return db.get(PaymentRecord, payment_id)


class CheckoutStore:
    """Checkout attempts created for business requests."""

    def create(
        self,
        db,
        *,
        checkout_id: str,
        provider: str,
        request_id: int,
        product_type: str,
        status: str,
        amount_cents: int | None = None,
        currency: str | None = None,
        link: str | None = None,
        customer: dict | None = None,
        raw: Any = None,
    ) -> CheckoutRecord:
        """Insert a checkout, or merge into an existing one with the same id."""

        values = {
            "checkout_id": checkout_id,
            "provider": provider,
            "request_id": request_id,
            "product_type": product_type,
            "status": status,
            "amount_cents": amount_cents,
            "currency": currency,
            "link": link,
            "customer": sanitize_json(customer) if customer else None,
            "raw": as_document(sanitize_json(raw)) if raw is not None else None,
            "updated_at": datetime.now(timezone.utc),
        }
        insert_stmt = dialect_insert(db, CheckoutRecord).values(**values)
        table = CheckoutRecord.__table__
        merged = {
            "status": insert_stmt.excluded.status,
            "updated_at": insert_stmt.excluded.updated_at,
        }
        for name in ("amount_cents", "currency", "link", "customer", "raw"):
            merged[name] = func.coalesce(insert_stmt.excluded[name], table.c[name])
        db.execute(insert_stmt.on_conflict_do_update(index_elements=["checkout_id"], set_=merged))
        return db.get(CheckoutRecord, checkout_id, populate_existing=True)

    def update_status(self, db, checkout_id: str, status: str | None, raw: Any = None) -> bool:
        """Record the provider's latest status on a known checkout."""

        if not checkout_id or not status:
            return False
        values: dict[str, Any] = {"status": status, "updated_at": datetime.now(timezone.utc)}
        if raw is not None:
            values["raw"] = as_document(sanitize_json(raw))
        result = db.execute(
            update(CheckoutRecord).where(CheckoutRecord.checkout_id == checkout_id).values(**values)
        )
        return result.rowcount == 1

    def get(self, db, checkout_id: str) -> CheckoutRecord | None:
        return db.get(CheckoutRecord, checkout_id)


def as_document(value: Any) -> dict | None:
    """JSONB columns hold objects; wrap scalars and lists."""

    if value is None or isinstance(value, dict):
        return value
    return {"value": value}
