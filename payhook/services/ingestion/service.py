"""Webhook ingestion pipeline and checkout creation.

A notification is verified, recorded once, merged into the payment record and,
when trusted, handed to the snapshot orchestrator. Verification failures are
logged and audited but never stop the event from being stored; providers get
an acknowledgement regardless so they stop retrying.
"""

import json
from decimal import Decimal
from typing import Any, Mapping

from payhook.common.logging import event_id_ctx, logger, payment_id_ctx, request_id_ctx
from payhook.common.metrics import (
    duplicate_events_skipped_total,
    webhook_processing_errors_total,
    webhook_verification_failures_total,
    webhooks_received_total,
)
from payhook.common.sanitize import sanitize_headers, sanitize_json
from payhook.services.ingestion.models import WebhookAuthFailure
from payhook.services.ingestion.providers import PARSERS
from payhook.services.ingestion.schemas import (
    CheckoutCreateRequest,
    CheckoutResponse,
    ProviderPayment,
    VerificationVerdict,
    WebhookAck,
)
from payhook.services.ingestion.store import CheckoutStore, EventStore, PaymentStore, as_document
from payhook.services.ingestion.verifier import WebhookVerifier
from payhook.services.orchestrator.models import ServiceRequest
from payhook.services.orchestrator.service import SnapshotOrchestrator


def decode_body(raw_body: bytes) -> Any:
    """Parsed JSON body, or `None` for empty/undecodable input."""

    if not raw_body:
        return None
    try:
        return json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None


class IngestionService:
    """Owns the webhook pipeline from verification to snapshot hand-off."""

    def __init__(
        self,
        session_factory,
        verifiers: Mapping[str, WebhookVerifier],
        orchestrator: SnapshotOrchestrator,
        *,
        payment_fetchers: Mapping[str, Any] | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.verifiers = dict(verifiers)
        self.orchestrator = orchestrator
        self.payment_fetchers = dict(payment_fetchers or {})
        self.event_store = EventStore()
        self.payment_store = PaymentStore()
        self.checkout_store = CheckoutStore()

    def supports(self, provider: str) -> bool:
        return provider in self.verifiers and provider in PARSERS

    def handle_webhook(
        self,
        provider: str,
        raw_body: bytes,
        headers: Mapping[str, str],
        query: Mapping[str, Any] | None = None,
        path_secret: str | None = None,
    ) -> WebhookAck:
        """Process one notification; never raises."""

        webhooks_received_total.labels(provider=provider).inc()
        event_id_ctx.set("")
        payment_id_ctx.set("")
        request_id_ctx.set("")
        try:
            return self._handle(provider, raw_body, headers, dict(query or {}), path_secret)
        except Exception as exc:
            webhook_processing_errors_total.labels(provider=provider).inc()
            logger.exception("webhook_processing_failed provider=%s error=%s", provider, exc)
            return WebhookAck(ok=False, note="internal_error")

    def _handle(
        self,
        provider: str,
        raw_body: bytes,
        headers: Mapping[str, str],
        query: dict,
        path_secret: str | None,
    ) -> WebhookAck:
        verifier = self.verifiers[provider]
        parser = PARSERS[provider]
        lowered = {str(k).lower(): str(v) for k, v in headers.items()}

        verdict = verifier.verify(raw_body, lowered, path_secret)
        body = decode_body(raw_body)
        if not (verdict.accepted and verdict.path_secret_ok):
            webhook_verification_failures_total.labels(provider=provider, reason=verdict.reason).inc()
            logger.warning(
                "webhook_verification_failed provider=%s reason=%s correlation_id=%s signature_ok=%s",
                provider,
                verdict.reason,
                verdict.correlation_id,
                verdict.signature_ok,
            )
            if verifier.should_audit(verdict):
                self._audit(provider, verdict, lowered, body)

        envelope = parser.envelope(body, query, lowered.get("x-request-id"), raw_body)
        event_id_ctx.set(envelope.event_uid)
        stored_body = body if body is not None else raw_body.decode("utf-8", errors="replace")
        with self.session_factory() as db:
            event = self.event_store.record(
                db,
                provider,
                envelope,
                headers=lowered,
                query=query,
                body=stored_body,
                verdict=verdict,
            )
            if event is None:
                db.rollback()
                duplicate_events_skipped_total.labels(provider=provider).inc()
                logger.info("duplicate event skipped provider=%s event_uid=%s", provider, envelope.event_uid)
                return WebhookAck(duplicate=True)
            db.commit()

        payment, authoritative = self._resolve_payment(provider, envelope.payment_id, body)
        if payment is None:
            if verdict.signature_ok:
                self._record_checkout_only(provider, envelope.checkout_id, parser.checkout_status(body), body)
            logger.info("notification_without_payment provider=%s topic=%s", provider, envelope.topic)
            return WebhookAck(note="no_payment")

        payment_id_ctx.set(payment.payment_id)
        if payment.status is None:
            logger.info("payment_status_unavailable provider=%s payment_id=%s", provider, payment.payment_id)
            return WebhookAck(note="no_status")

        trusted = verdict.signature_ok or authoritative
        with self.session_factory() as db:
            self.payment_store.upsert_by_payment_id(db, payment, trusted=trusted)
            if trusted and payment.checkout_id:
                self.checkout_store.update_status(db, payment.checkout_id, payment.status, payment.raw)
            db.commit()

        if not trusted:
            logger.warning(
                "snapshot_update_skipped provider=%s payment_id=%s reason=%s",
                provider,
                payment.payment_id,
                verdict.reason,
            )
            return WebhookAck(note="untrusted")

        self.orchestrator.update_from_provider_payment(payment, provider)
        return WebhookAck()

    def _resolve_payment(self, provider: str, payment_id: str | None, body: Any) -> tuple[ProviderPayment | None, bool]:
        """Prefer the provider's authenticated API over the notification body."""

        parser = PARSERS[provider]
        fetcher = self.payment_fetchers.get(provider)
        if fetcher is not None and payment_id:
            details = fetcher.fetch_payment(payment_id)
            if details is not None:
                payment = parser.from_payment(details)
                if payment is not None:
                    return payment, True
        return parser.from_notification(body), False

    def _record_checkout_only(self, provider: str, checkout_id: str | None, status: str | None, body: Any) -> None:
        if not checkout_id or not status:
            return
        with self.session_factory() as db:
            updated = self.checkout_store.update_status(db, checkout_id, status, body)
            db.commit()
        logger.info(
            "checkout_status_recorded provider=%s checkout_id=%s status=%s known=%s",
            provider,
            checkout_id,
            status,
            updated,
        )

    def _audit(self, provider: str, verdict: VerificationVerdict, headers: dict, body: Any) -> None:
        try:
            with self.session_factory() as db:
                db.add(
                    WebhookAuthFailure(
                        provider=provider,
                        correlation_id=verdict.correlation_id,
                        reason=verdict.reason,
                        headers=sanitize_headers(headers),
                        raw_body=as_document(sanitize_json(body)),
                    )
                )
                db.commit()
        except Exception as exc:
            logger.exception("webhook_audit_write_failed provider=%s error=%s", provider, exc)


class CheckoutService:
    """Creates provider checkouts for existing business requests."""

    def __init__(self, session_factory, clients: Mapping[str, Any], orchestrator: SnapshotOrchestrator) -> None:
        self.session_factory = session_factory
        self.clients = dict(clients)
        self.orchestrator = orchestrator
        self.checkout_store = CheckoutStore()

    def create(self, req: CheckoutCreateRequest) -> CheckoutResponse:
        """Raises `LookupError` for an unknown request id."""

        with self.session_factory() as db:
            service_request = db.get(ServiceRequest, req.request_id)
            if service_request is None:
                raise LookupError(f"request {req.request_id} not found")
            product_type = service_request.product_type

        created = self.clients[req.provider].create_checkout(req)
        with self.session_factory() as db:
            self.checkout_store.create(
                db,
                checkout_id=created["checkout_id"],
                provider=req.provider,
                request_id=req.request_id,
                product_type=product_type,
                status=created["status"],
                amount_cents=req.amount_cents,
                currency=req.currency.upper(),
                link=created["link"],
                customer={"name": req.payer_name, "email": req.payer_email},
                raw=created["raw"],
            )
            db.commit()
        self.orchestrator.record_checkout(
            req.request_id,
            req.provider,
            created["checkout_id"],
            created["link"],
            amount=Decimal(req.amount_cents) / 100,
            currency=req.currency.upper(),
        )
        logger.info(
            "checkout_created provider=%s request_id=%s checkout_id=%s",
            req.provider,
            req.request_id,
            created["checkout_id"],
        )
        return CheckoutResponse(
            checkout_id=created["checkout_id"],
            status=created["status"],
            link=created["link"] or "",
        )
