"""Request snapshot orchestration.

Maps a provider payment onto the owning business request, writes the
`payment_*` snapshot columns with optimistic concurrency, and announces real
transitions on the event bus after commit. Product workflows are never run
from here.
"""

from datetime import datetime, timezone

from sqlalchemy import select, update

from payhook.common.events import EventBus, NormalizedStatus, PaymentStatusChanged
from payhook.common.logging import logger, request_id_ctx
from payhook.common.metrics import payment_status_changes_total
from payhook.services.ingestion.models import CheckoutRecord
from payhook.services.ingestion.schemas import ProviderPayment
from payhook.services.orchestrator.models import ServiceRequest


# A late notification must not move an approved snapshot back to these.
NON_REGRESSING_FROM_APPROVED = frozenset({NormalizedStatus.PENDING.value, NormalizedStatus.UPDATED.value})


class SnapshotOrchestrator:
    """Single writer of the payment snapshot on `service_requests`."""

    def __init__(self, session_factory, bus: EventBus, max_write_attempts: int = 3) -> None:
        self.session_factory = session_factory
        self.bus = bus
        self.max_write_attempts = max_write_attempts

    def resolve_request(self, db, external_reference: str | None, checkout_id: str | None) -> ServiceRequest | None:
        """Numeric id in `external_reference`, then `request_ref`, then the checkout record."""

        ref = (external_reference or "").strip()
        if ref.isdigit():
            found = db.get(ServiceRequest, int(ref))
            if found is not None:
                return found
        if ref:
            found = db.execute(
                select(ServiceRequest).where(ServiceRequest.request_ref == ref)
            ).scalar_one_or_none()
            if found is not None:
                return found
        if checkout_id:
            checkout = db.get(CheckoutRecord, checkout_id)
            if checkout is not None:
                return db.get(ServiceRequest, checkout.request_id)
            return db.execute(
                select(ServiceRequest).where(ServiceRequest.payment_checkout_id == checkout_id).limit(1)
            ).scalar_one_or_none()
        return None

    def update_from_provider_payment(self, payment: ProviderPayment, provider: str) -> PaymentStatusChanged | None:
        """Write the snapshot; publish `PaymentStatusChanged` when status or payment id changed."""

        for attempt in range(1, self.max_write_attempts + 1):
            with self.session_factory() as db:
                req = self.resolve_request(db, payment.external_reference, payment.checkout_id)
                if req is None:
                    logger.warning(
                        "snapshot_request_not_found provider=%s payment_id=%s external_reference=%s checkout_id=%s",
                        provider,
                        payment.payment_id,
                        payment.external_reference,
                        payment.checkout_id,
                    )
                    return None
                request_id_ctx.set(str(req.request_id))

                previous_status = req.payment_status
                previous_payment_id = req.payment_id
                new_status = payment.normalized_status.value
                if (
                    previous_status == NormalizedStatus.APPROVED.value
                    and new_status in NON_REGRESSING_FROM_APPROVED
                    and previous_payment_id == payment.payment_id
                ):
                    logger.info(
                        "snapshot_regression_ignored request_id=%s payment_id=%s incoming=%s",
                        req.request_id,
                        payment.payment_id,
                        new_status,
                    )
                    new_status = previous_status

                checkout = db.get(CheckoutRecord, payment.checkout_id) if payment.checkout_id else None
                authorized_at = req.payment_authorized_at
                if new_status == NormalizedStatus.APPROVED.value and payment.approved_at is not None:
                    authorized_at = payment.approved_at

                result = db.execute(
                    update(ServiceRequest)
                    .where(
                        ServiceRequest.request_id == req.request_id,
                        ServiceRequest.snapshot_version == req.snapshot_version,
                    )
                    .values(
                        payment_provider=provider,
                        payment_status=new_status,
                        payment_status_detail=payment.status_detail or payment.status,
                        payment_amount=payment.amount if payment.amount is not None else req.payment_amount,
                        payment_currency=payment.currency or req.payment_currency,
                        payment_checkout_id=payment.checkout_id or req.payment_checkout_id,
                        payment_id=payment.payment_id,
                        payment_link=(checkout.link if checkout is not None else None) or req.payment_link,
                        payment_authorized_at=authorized_at,
                        payment_updated_at=datetime.now(timezone.utc),
                        snapshot_version=req.snapshot_version + 1,
                    )
                )
                if result.rowcount != 1:
                    db.rollback()
                    logger.info(
                        "snapshot_write_conflict request_id=%s attempt=%s", req.request_id, attempt
                    )
                    continue
                db.commit()
                db.refresh(req)

            if new_status == previous_status and payment.payment_id == previous_payment_id:
                logger.info("snapshot_unchanged request_id=%s status=%s", req.request_id, new_status)
                return None

            event = self._event_from(req, previous_status)
            payment_status_changes_total.labels(provider=provider, normalized_status=new_status).inc()
            logger.info(
                "snapshot_updated request_id=%s from=%s to=%s payment_id=%s",
                req.request_id,
                previous_status,
                new_status,
                payment.payment_id,
            )
            self.bus.publish(event)
            return event

        logger.error(
            "snapshot_write_conflict_exhausted payment_id=%s attempts=%s",
            payment.payment_id,
            self.max_write_attempts,
        )
        return None

    def record_checkout(
        self,
        request_id: int,
        provider: str,
        checkout_id: str,
        link: str | None,
        amount=None,
        currency: str | None = None,
    ) -> bool:
        """Point the snapshot at a freshly created checkout without touching its status."""

        with self.session_factory() as db:
            result = db.execute(
                update(ServiceRequest)
                .where(ServiceRequest.request_id == request_id)
                .values(
                    payment_provider=provider,
                    payment_checkout_id=checkout_id,
                    payment_link=link,
                    payment_amount=amount,
                    payment_currency=currency,
                    payment_updated_at=datetime.now(timezone.utc),
                    snapshot_version=ServiceRequest.snapshot_version + 1,
                )
            )
            db.commit()
            return result.rowcount == 1

    def replay_snapshot_event(self, request_id: int) -> PaymentStatusChanged | None:
        """Republish the stored snapshot, e.g. after a crash between commit and publish."""

        with self.session_factory() as db:
            req = db.get(ServiceRequest, request_id)
            if req is None or req.payment_status is None:
                return None
        event = self._event_from(req, previous_status=None)
        logger.info("snapshot_replayed request_id=%s status=%s", request_id, req.payment_status)
        self.bus.publish(event)
        return event

    def _event_from(self, req: ServiceRequest, previous_status: str | None) -> PaymentStatusChanged:
        return PaymentStatusChanged(
            request_id=req.request_id,
            product_type=req.product_type,
            provider=req.payment_provider or "unknown",
            normalized_status=NormalizedStatus(req.payment_status),
            previous_status=previous_status,
            status_detail=req.payment_status_detail,
            amount=req.payment_amount,
            currency=req.payment_currency,
            checkout_id=req.payment_checkout_id,
            payment_id=req.payment_id,
            authorized_at=req.payment_authorized_at,
        )
