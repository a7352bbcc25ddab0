"""Provider status tables and notification parsing."""

from decimal import Decimal

import pytest

from payhook.common.events import NormalizedStatus
from payhook.services.ingestion.providers import PARSERS, make_event_uid, normalize_status


@pytest.mark.parametrize(
    "provider,status,expected",
    [
        ("mercadopago", "approved", NormalizedStatus.APPROVED),
        ("mercadopago", "in_process", NormalizedStatus.PENDING),
        ("mercadopago", "authorized", NormalizedStatus.PENDING),
        ("mercadopago", "cancelled", NormalizedStatus.CANCELED),
        ("mercadopago", "charged_back", NormalizedStatus.CHARGED_BACK),
        ("pagbank", "PAID", NormalizedStatus.APPROVED),
        ("pagbank", "paid", NormalizedStatus.APPROVED),
        ("pagbank", "DECLINED", NormalizedStatus.REJECTED),
        ("pagbank", "CHARGEBACK", NormalizedStatus.CHARGED_BACK),
        ("paypal", "COMPLETED", NormalizedStatus.APPROVED),
        ("paypal", "pending", NormalizedStatus.PENDING),
        ("paypal", "DENIED", NormalizedStatus.REJECTED),
        ("paypal", "VOIDED", NormalizedStatus.CANCELED),
        ("paypal", "REFUNDED", NormalizedStatus.REFUNDED),
        ("paypal", "PARTIALLY_REFUNDED", NormalizedStatus.REFUNDED),
        ("paypal", "REVERSED", NormalizedStatus.CHARGED_BACK),
    ],
)
def test_known_statuses(provider, status, expected):
    assert normalize_status(provider, status) == expected


@pytest.mark.parametrize("status", [None, "", "something_new"])
def test_unknown_statuses_fall_back_to_updated(status):
    assert normalize_status("mercadopago", status) == NormalizedStatus.UPDATED
    assert normalize_status("pagbank", status) == NormalizedStatus.UPDATED
    assert normalize_status("paypal", status) == NormalizedStatus.UPDATED
    assert normalize_status("paypal", "approved") == NormalizedStatus.UPDATED
    assert normalize_status("stripe", "succeeded") == NormalizedStatus.UPDATED


def test_event_uid_prefers_correlation_id_then_content_hash():
    assert make_event_uid("mercadopago", "abc", {"a": 1}, b"") == "mercadopago:abc"
    first = make_event_uid("mercadopago", None, {"a": 1, "b": 2}, b"")
    reordered = make_event_uid("mercadopago", None, {"b": 2, "a": 1}, b"")
    assert first == reordered
    assert first.startswith("mercadopago:sha256:")


def test_mercadopago_envelope_topic_sources():
    parser = PARSERS["mercadopago"]
    body = {"action": "payment.updated", "data": {"id": "77"}}

    envelope = parser.envelope(body, {}, "rid-1", b"")
    assert envelope.topic == "payment"
    assert envelope.action == "payment.updated"
    assert envelope.payment_id == "77"

    order = parser.envelope({"type": "merchant_order", "data": {"id": "5"}}, {}, "rid-2", b"")
    assert order.topic == "merchant_order"
    assert order.payment_id is None


def test_mercadopago_payment_from_api_object():
    payment = PARSERS["mercadopago"].from_payment(
        {
            "id": 123,
            "status": "approved",
            "status_detail": "accredited",
            "external_reference": "42",
            "preference_id": "pref-1",
            "transaction_amount": 35.5,
            "currency_id": "BRL",
            "date_approved": "2026-10-01T12:00:00.000-03:00",
            "payer": {
                "first_name": "Ana",
                "last_name": "Lima",
                "email": "ana@example.org",
                "identification": {"number": "12345678909"},
                "phone": {"number": "81998765432"},
            },
        }
    )

    assert payment.payment_id == "123"
    assert payment.normalized_status == NormalizedStatus.APPROVED
    assert payment.checkout_id == "pref-1"
    assert payment.amount == Decimal("35.5")
    assert payment.customer.name == "Ana Lima"
    assert payment.approved_at.utcoffset().total_seconds() == -3 * 3600


def test_mercadopago_notification_body_fallback():
    payment = PARSERS["mercadopago"].from_notification(
        {"status": "approved", "data": {"id": "PAY1"}, "external_reference": "REQ1"}
    )
    assert payment.payment_id == "PAY1"
    assert payment.external_reference == "REQ1"
    assert payment.normalized_status == NormalizedStatus.APPROVED


def test_pagbank_charge_notification():
    body = {
        "id": "ORDE_1",
        "reference_id": "42",
        "customer": {"name": "Ana", "email": "ANA@EXAMPLE.ORG", "tax_id": "12345678909"},
        "charges": [
            {
                "id": "CHAR_1",
                "status": "PAID",
                "amount": {"value": 3500, "currency": "BRL"},
                "paid_at": "2026-10-01T12:00:00-03:00",
            }
        ],
    }
    parser = PARSERS["pagbank"]

    envelope = parser.envelope(body, {}, None, b"")
    payment = parser.from_notification(body)

    assert envelope.topic == "charge"
    assert envelope.payment_id == "CHAR_1"
    assert payment.normalized_status == NormalizedStatus.APPROVED
    assert payment.amount == Decimal("35.00")
    assert payment.external_reference == "42"
    assert payment.customer.email == "ana@example.org"


def test_pagbank_checkout_only_event_means_created():
    parser = PARSERS["pagbank"]
    body = {"checkout": {"id": "CHEC_1"}}

    assert parser.from_notification(body) is None
    assert parser.envelope(body, {}, None, b"").checkout_id == "CHEC_1"
    assert parser.checkout_status(body) == "CREATED"


PAYPAL_CAPTURE_EVENT = {
    "id": "WH-58D329510W468432D",
    "event_type": "PAYMENT.CAPTURE.COMPLETED",
    "resource": {
        "id": "2GG279541U471931P",
        "status": "COMPLETED",
        "amount": {"value": "35.00", "currency_code": "BRL"},
        "custom_id": "42",
        "create_time": "2026-10-01T15:00:00Z",
        "update_time": "2026-10-01T15:00:05Z",
        "supplementary_data": {"related_ids": {"order_id": "5O190127TN364715T"}},
    },
}


def test_paypal_capture_event():
    parser = PARSERS["paypal"]

    envelope = parser.envelope(PAYPAL_CAPTURE_EVENT, {}, "transmission-1", b"")
    payment = parser.from_notification(PAYPAL_CAPTURE_EVENT)

    assert envelope.event_uid == "paypal:WH-58D329510W468432D"
    assert envelope.topic == "capture"
    assert envelope.action == "PAYMENT.CAPTURE.COMPLETED"
    assert envelope.payment_id == "2GG279541U471931P"
    assert envelope.checkout_id == "5O190127TN364715T"
    assert payment.normalized_status == NormalizedStatus.APPROVED
    assert payment.external_reference == "42"
    assert payment.checkout_id == "5O190127TN364715T"
    assert payment.amount == Decimal("35.00")
    assert payment.currency == "BRL"
    assert payment.approved_at is not None


def test_paypal_order_event_has_no_payment():
    parser = PARSERS["paypal"]
    body = {
        "id": "WH-1",
        "event_type": "CHECKOUT.ORDER.APPROVED",
        "resource": {"id": "5O190127TN364715T", "status": "APPROVED"},
    }

    envelope = parser.envelope(body, {}, None, b"")

    assert envelope.topic == "order"
    assert envelope.payment_id is None
    assert envelope.checkout_id == "5O190127TN364715T"
    assert parser.from_notification(body) is None
    assert parser.checkout_status(body) == "APPROVED"
    assert parser.checkout_status(PAYPAL_CAPTURE_EVENT) is None
