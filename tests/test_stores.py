"""Event dedupe, coalescing payment upserts and checkout records."""

from decimal import Decimal

from sqlalchemy import func, select

from payhook.common.events import NormalizedStatus
from payhook.common.sanitize import REDACTED
from payhook.services.ingestion.models import NotificationEvent
from payhook.services.ingestion.schemas import (
    CustomerInfo,
    NotificationEnvelope,
    ProviderPayment,
    VerificationVerdict,
)
from payhook.services.ingestion.store import CheckoutStore, EventStore, PaymentStore


def _record(db, uid: str, body=None):
    return EventStore().record(
        db,
        "mercadopago",
        NotificationEnvelope(event_uid=uid, topic="payment", payment_id="1"),
        headers={"X-Signature": "ts=1,v1=ab", "User-Agent": "MercadoPago"},
        query={"type": "payment"},
        body=body or {"data": {"id": "1"}, "token": "secret-token"},
        verdict=VerificationVerdict(provider="mercadopago", signature_ok=True, fresh=True),
    )


def test_event_is_recorded_once(session_factory):
    with session_factory() as db:
        first = _record(db, "mercadopago:rid-1")
        db.commit()
    with session_factory() as db:
        second = _record(db, "mercadopago:rid-1")
        db.commit()
        count = db.execute(select(func.count()).select_from(NotificationEvent)).scalar_one()

    assert first is not None
    assert second is None
    assert count == 1
    assert first.headers["x-signature"] == REDACTED
    assert first.raw_body["token"] == REDACTED
    assert first.signature_ok is True
    assert first.verification_reason == "ok"
    assert first.legal_basis == "contract"
    assert first.expires_at is not None


def _payment(**overrides) -> ProviderPayment:
    fields = {
        "provider": "mercadopago",
        "payment_id": "PAY1",
        "status": "pending",
        "normalized_status": NormalizedStatus.PENDING,
    }
    fields.update(overrides)
    return ProviderPayment(**fields)


def test_upsert_never_regresses_populated_fields(session_factory):
    store = PaymentStore()
    with session_factory() as db:
        store.upsert_by_payment_id(
            db,
            _payment(
                status="approved",
                status_detail="accredited",
                normalized_status=NormalizedStatus.APPROVED,
                customer=CustomerInfo(email="john.doe@example.com", phone="81998765432"),
                amount=Decimal("35.00"),
                currency="brl",
                external_reference="42",
            ),
        )
        db.commit()

    # An older notification arrives late without customer data.
    with session_factory() as db:
        record = store.upsert_by_payment_id(db, _payment(status="pending", status_detail=None))
        db.commit()

    assert record.status == "pending"
    assert record.status_detail is None
    assert record.normalized_status == "PENDING"
    assert record.customer_email == "j******e@e*****e.com"
    assert record.customer_phone == "*******5432"
    assert record.amount == Decimal("35.00")
    assert record.currency == "BRL"
    assert record.external_reference == "42"


def test_untrusted_upsert_keeps_recorded_status(session_factory):
    store = PaymentStore()
    with session_factory() as db:
        store.upsert_by_payment_id(db, _payment(status="rejected", normalized_status=NormalizedStatus.REJECTED))
        db.commit()

    with session_factory() as db:
        record = store.upsert_by_payment_id(
            db,
            _payment(status="approved", normalized_status=NormalizedStatus.APPROVED, amount=Decimal("1.00")),
            trusted=False,
        )
        db.commit()

    assert record.status == "rejected"
    assert record.normalized_status == "REJECTED"
    assert record.amount == Decimal("1.00")

    with session_factory() as db:
        fresh = store.upsert_by_payment_id(db, _payment(payment_id="PAY2", status="approved"), trusted=False)
        db.commit()

    assert fresh.status == "approved"


def test_checkout_create_merges_and_status_updates(session_factory):
    store = CheckoutStore()
    with session_factory() as db:
        store.create(
            db,
            checkout_id="pref-1",
            provider="mercadopago",
            request_id=7,
            product_type="birth_chart",
            status="ACTIVE",
            link="https://pay.example/pref-1",
            customer={"email": "ana@example.org"},
        )
        db.commit()
    with session_factory() as db:
        merged = store.create(
            db,
            checkout_id="pref-1",
            provider="mercadopago",
            request_id=7,
            product_type="birth_chart",
            status="ACTIVE",
        )
        updated = store.update_status(db, "pref-1", "approved", {"status": "approved"})
        missing = store.update_status(db, "nope", "approved")
        db.commit()
        record = store.get(db, "pref-1")

    assert merged.link == "https://pay.example/pref-1"
    assert merged.customer == {"email": "a*a@e*****e.org"}
    assert updated is True
    assert missing is False
    assert record.status == "approved"
