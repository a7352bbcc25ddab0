"""Provider payload parsing and status normalization.

Each provider gets a closed status table onto `NormalizedStatus`. Anything not
in the table (including a missing status) maps to `UPDATED` so new provider
states never break ingestion.
"""

import hashlib
import json
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from payhook.common.events import NormalizedStatus
from payhook.services.ingestion.schemas import CustomerInfo, NotificationEnvelope, ProviderPayment
from payhook.services.ingestion.verifier import extract_resource_id


MERCADOPAGO_STATUSES = {
    "approved": NormalizedStatus.APPROVED,
    "pending": NormalizedStatus.PENDING,
    "in_process": NormalizedStatus.PENDING,
    "in_mediation": NormalizedStatus.PENDING,
    "authorized": NormalizedStatus.PENDING,
    "rejected": NormalizedStatus.REJECTED,
    "cancelled": NormalizedStatus.CANCELED,
    "canceled": NormalizedStatus.CANCELED,
    "refunded": NormalizedStatus.REFUNDED,
    "charged_back": NormalizedStatus.CHARGED_BACK,
    "expired": NormalizedStatus.EXPIRED,
}

PAGBANK_STATUSES = {
    "PAID": NormalizedStatus.APPROVED,
    "AUTHORIZED": NormalizedStatus.PENDING,
    "IN_ANALYSIS": NormalizedStatus.PENDING,
    "WAITING": NormalizedStatus.PENDING,
    "PENDING": NormalizedStatus.PENDING,
    "DECLINED": NormalizedStatus.REJECTED,
    "CANCELED": NormalizedStatus.CANCELED,
    "REFUNDED": NormalizedStatus.REFUNDED,
    "CHARGEBACK": NormalizedStatus.CHARGED_BACK,
    "EXPIRED": NormalizedStatus.EXPIRED,
}

PAYPAL_STATUSES = {
    "COMPLETED": NormalizedStatus.APPROVED,
    "PENDING": NormalizedStatus.PENDING,
    "DECLINED": NormalizedStatus.REJECTED,
    "DENIED": NormalizedStatus.REJECTED,
    "FAILED": NormalizedStatus.REJECTED,
    "CANCELLED": NormalizedStatus.CANCELED,
    "CANCELED": NormalizedStatus.CANCELED,
    "VOIDED": NormalizedStatus.CANCELED,
    "REFUNDED": NormalizedStatus.REFUNDED,
    "PARTIALLY_REFUNDED": NormalizedStatus.REFUNDED,
    "REVERSED": NormalizedStatus.CHARGED_BACK,
}


def normalize_status(provider: str, status: str | None) -> NormalizedStatus:
    if not status:
        return NormalizedStatus.UPDATED
    text = str(status).strip()
    if provider == "mercadopago":
        return MERCADOPAGO_STATUSES.get(text.lower(), NormalizedStatus.UPDATED)
    if provider == "pagbank":
        return PAGBANK_STATUSES.get(text.upper(), NormalizedStatus.UPDATED)
    if provider == "paypal":
        return PAYPAL_STATUSES.get(text.upper(), NormalizedStatus.UPDATED)
    return NormalizedStatus.UPDATED


def make_event_uid(provider: str, correlation_id: str | None, body: Any, raw_body: bytes) -> str:
    """`{provider}:{correlation id}`, or a content hash when the header is absent."""

    if correlation_id:
        return f"{provider}:{correlation_id}"
    if body is not None:
        content = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")
    else:
        content = raw_body
    return f"{provider}:sha256:{hashlib.sha256(content).hexdigest()}"


def _first(*values):
    for value in values:
        if value is not None and value != "":
            return value
    return None


def _as_dict(value) -> dict:
    return value if isinstance(value, dict) else {}


def _text(value) -> str | None:
    return None if value is None or value == "" else str(value)


def parse_datetime(value) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def parse_amount(value, *, cents: bool = False) -> Decimal | None:
    if value is None or isinstance(value, bool) or value == "":
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    return (amount / 100).quantize(Decimal("0.01")) if cents else amount


class MercadoPagoParser:
    provider = "mercadopago"

    def envelope(self, body: Any, query: dict, correlation_id: str | None, raw_body: bytes) -> NotificationEnvelope:
        payload = _as_dict(body)
        action = _text(payload.get("action"))
        topic = _first(
            query.get("type"),
            query.get("topic"),
            payload.get("type"),
            payload.get("topic"),
            action.split(".")[0] if action else None,
        )
        payment_id = None
        if topic in (None, "payment"):
            payment_id = extract_resource_id(payload) or _text(_first(query.get("data.id"), query.get("id")))
        return NotificationEnvelope(
            event_uid=make_event_uid(self.provider, correlation_id, body, raw_body),
            topic=_text(topic),
            action=action,
            payment_id=payment_id,
        )

    def from_payment(self, payment: dict) -> ProviderPayment | None:
        """Map a payment object (fetched by id, or inline) to `ProviderPayment`."""

        payment_id = _text(payment.get("id"))
        if payment_id is None:
            return None
        payer = _as_dict(payment.get("payer"))
        additional_payer = _as_dict(_as_dict(payment.get("additional_info")).get("payer"))
        name = _first(
            payer.get("name"),
            " ".join(p for p in (payer.get("first_name"), payer.get("last_name")) if p).strip(),
        )
        status = _text(payment.get("status"))
        return ProviderPayment(
            provider=self.provider,
            payment_id=payment_id,
            checkout_id=_text(
                _first(payment.get("preference_id"), _as_dict(payment.get("metadata")).get("preference_id"))
            ),
            status=status,
            status_detail=_text(payment.get("status_detail")),
            normalized_status=normalize_status(self.provider, status),
            external_reference=_text(payment.get("external_reference")),
            customer=CustomerInfo(
                name=_text(name),
                email=_text(payer.get("email")),
                tax_id=_text(_as_dict(payer.get("identification")).get("number")),
                phone=_text(_as_dict(payer.get("phone")).get("number")),
                address=additional_payer.get("address") if isinstance(additional_payer.get("address"), dict) else None,
            ),
            amount=parse_amount(payment.get("transaction_amount")),
            currency=_text(payment.get("currency_id")),
            created_at=parse_datetime(payment.get("date_created")),
            approved_at=parse_datetime(payment.get("date_approved")),
            updated_at=parse_datetime(payment.get("date_last_updated")),
            raw=payment,
        )

    def checkout_status(self, body: Any) -> str | None:
        # Preference status only changes through a payment object.
        return None

    def from_notification(self, body: Any) -> ProviderPayment | None:
        """Best-effort payment view from the notification body alone."""

        payload = _as_dict(body)
        merged = {k: v for k, v in payload.items() if k != "data"}
        merged.update(_as_dict(payload.get("data")))
        merged["id"] = extract_resource_id(payload)
        return self.from_payment(merged)


class PagBankParser:
    provider = "pagbank"

    def _object_type(self, payload: dict) -> str | None:
        data = _as_dict(payload.get("data"))
        raw = str(
            _first(
                payload.get("object_type"),
                _as_dict(payload.get("object")).get("type"),
                payload.get("type"),
                payload.get("topic"),
                payload.get("event_type"),
                payload.get("event"),
            )
            or ""
        ).lower()
        if "charge" in raw:
            return "charge"
        if "checkout" in raw:
            return "checkout"
        if payload.get("charge") or data.get("charge") or data.get("charge_id") or payload.get("charges"):
            return "charge"
        if payload.get("checkout") or data.get("checkout") or data.get("checkout_id"):
            return "checkout"
        return None

    def _charge(self, payload: dict) -> dict:
        charges = payload.get("charges")
        if isinstance(charges, list) and charges and isinstance(charges[0], dict):
            return charges[0]
        return _as_dict(_first(payload.get("charge"), _as_dict(payload.get("data")).get("charge")))

    def _ids(self, payload: dict, object_type: str | None) -> tuple[str | None, str | None, str | None]:
        data = _as_dict(payload.get("data"))
        charge = self._charge(payload)
        checkout = _as_dict(payload.get("checkout"))
        charge_id = _first(
            payload.get("charge_id"),
            charge.get("id"),
            data.get("charge_id"),
            data.get("id") if object_type == "charge" else None,
        )
        checkout_id = _first(
            payload.get("checkout_id"),
            checkout.get("id"),
            data.get("checkout_id"),
            data.get("id") if object_type == "checkout" else None,
        )
        reference_id = _first(
            payload.get("reference_id"),
            data.get("reference_id"),
            charge.get("reference_id"),
            checkout.get("reference_id"),
        )
        return _text(charge_id), _text(checkout_id), _text(reference_id)

    def envelope(self, body: Any, query: dict, correlation_id: str | None, raw_body: bytes) -> NotificationEnvelope:
        payload = _as_dict(body)
        object_type = self._object_type(payload)
        charge_id, checkout_id, _ = self._ids(payload, object_type)
        return NotificationEnvelope(
            event_uid=make_event_uid(self.provider, correlation_id, body, raw_body),
            topic=object_type,
            action=_text(_first(payload.get("event_type"), payload.get("event"))),
            payment_id=charge_id,
            checkout_id=checkout_id,
        )

    def checkout_status(self, body: Any) -> str | None:
        """Status to record on the checkout; checkout-only events mean the flow started."""

        payload = _as_dict(body)
        object_type = self._object_type(payload)
        charge_id, checkout_id, _ = self._ids(payload, object_type)
        status = self._status(payload)
        if status is None and (object_type == "checkout" or (checkout_id and not charge_id)):
            return "CREATED"
        return status

    def _status(self, payload: dict) -> str | None:
        status = _first(
            payload.get("status"),
            _as_dict(payload.get("data")).get("status"),
            self._charge(payload).get("status"),
            _as_dict(payload.get("checkout")).get("status"),
            payload.get("current_status"),
        )
        return str(status).strip().upper() if status is not None else None

    def _customer(self, payload: dict) -> CustomerInfo:
        customer = _as_dict(
            _first(payload.get("customer"), _as_dict(payload.get("data")).get("customer"), payload.get("buyer"))
        )
        tax = customer.get("tax_id")
        if isinstance(tax, dict):
            tax = _first(tax.get("number"), tax.get("value"))
        else:
            tax = _first(tax, customer.get("document"), customer.get("cpf"), customer.get("cnpj"))
        phone = None
        phones = customer.get("phones")
        if isinstance(phones, list) and phones and isinstance(phones[0], dict):
            phone = "".join(str(phones[0].get(k) or "") for k in ("country", "area", "number")) or None
        email = _text(customer.get("email"))
        return CustomerInfo(
            name=_text(_first(customer.get("name"), customer.get("full_name"))),
            email=email.lower() if email else None,
            tax_id=_text(tax),
            phone=phone,
        )

    def from_notification(self, body: Any) -> ProviderPayment | None:
        payload = _as_dict(body)
        object_type = self._object_type(payload)
        charge_id, checkout_id, reference_id = self._ids(payload, object_type)
        if charge_id is None:
            return None
        charge = self._charge(payload)
        amount = _as_dict(_first(charge.get("amount"), payload.get("amount")))
        status = self._status(payload)
        return ProviderPayment(
            provider=self.provider,
            payment_id=charge_id,
            checkout_id=checkout_id,
            status=status,
            status_detail=_text(_as_dict(charge.get("payment_response")).get("message")),
            normalized_status=normalize_status(self.provider, status),
            external_reference=reference_id,
            customer=self._customer(payload),
            amount=parse_amount(amount.get("value"), cents=True),
            currency=_text(amount.get("currency")),
            created_at=parse_datetime(_first(charge.get("created_at"), payload.get("created_at"))),
            approved_at=parse_datetime(charge.get("paid_at")),
            updated_at=parse_datetime(_first(charge.get("updated_at"), payload.get("updated_at"))),
            raw=payload,
        )


class PayPalParser:
    """`PAYMENT.CAPTURE.*` events carry the capture; `CHECKOUT.ORDER.*` only the order."""

    provider = "paypal"

    def _object_type(self, payload: dict) -> str | None:
        event_type = str(payload.get("event_type") or "").upper()
        if event_type.startswith("PAYMENT.CAPTURE."):
            return "capture"
        if event_type.startswith("CHECKOUT.ORDER."):
            return "order"
        return None

    def _order_id(self, capture) -> str | None:
        related = _as_dict(_as_dict(_as_dict(capture).get("supplementary_data")).get("related_ids"))
        return _text(related.get("order_id"))

    def envelope(self, body: Any, query: dict, correlation_id: str | None, raw_body: bytes) -> NotificationEnvelope:
        payload = _as_dict(body)
        object_type = self._object_type(payload)
        resource = _as_dict(payload.get("resource"))
        resource_id = _text(resource.get("id"))
        return NotificationEnvelope(
            # Redeliveries of one event keep its `id`.
            event_uid=make_event_uid(self.provider, _text(payload.get("id")) or correlation_id, body, raw_body),
            topic=object_type,
            action=_text(payload.get("event_type")),
            payment_id=resource_id if object_type == "capture" else None,
            checkout_id=resource_id if object_type == "order" else self._order_id(resource),
        )

    def from_payment(self, capture: dict) -> ProviderPayment | None:
        """Map a capture object (fetched by id, or a webhook resource)."""

        capture_id = _text(capture.get("id"))
        if capture_id is None:
            return None
        payer = _as_dict(capture.get("payer"))
        payer_name = _as_dict(payer.get("name"))
        amount = _as_dict(capture.get("amount"))
        status = _text(capture.get("status"))
        status = status.upper() if status else None
        return ProviderPayment(
            provider=self.provider,
            payment_id=capture_id,
            checkout_id=self._order_id(capture),
            status=status,
            status_detail=_text(_as_dict(capture.get("status_details")).get("reason")),
            normalized_status=normalize_status(self.provider, status),
            external_reference=_text(_first(capture.get("custom_id"), capture.get("invoice_id"))),
            customer=CustomerInfo(
                name=_text(" ".join(p for p in (payer_name.get("given_name"), payer_name.get("surname")) if p)),
                email=_text(payer.get("email_address")),
                phone=_text(_as_dict(_as_dict(payer.get("phone")).get("phone_number")).get("national_number")),
            ),
            amount=parse_amount(amount.get("value")),
            currency=_text(amount.get("currency_code")),
            created_at=parse_datetime(capture.get("create_time")),
            approved_at=parse_datetime(capture.get("update_time")) if status == "COMPLETED" else None,
            updated_at=parse_datetime(capture.get("update_time")),
            raw=capture,
        )

    def checkout_status(self, body: Any) -> str | None:
        payload = _as_dict(body)
        if self._object_type(payload) != "order":
            return None
        status = _as_dict(payload.get("resource")).get("status")
        return str(status).strip().upper() if status else None

    def from_notification(self, body: Any) -> ProviderPayment | None:
        payload = _as_dict(body)
        if self._object_type(payload) != "capture":
            return None
        return self.from_payment(_as_dict(payload.get("resource")))


PARSERS = {
    MercadoPagoParser.provider: MercadoPagoParser(),
    PagBankParser.provider: PagBankParser(),
    PayPalParser.provider: PayPalParser(),
}
