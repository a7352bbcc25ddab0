"""Snapshot writes, request resolution and post-commit publication."""

from decimal import Decimal

from payhook.common.events import NormalizedStatus, PaymentStatusChanged
from payhook.services.ingestion.schemas import ProviderPayment
from payhook.services.ingestion.store import CheckoutStore
from payhook.services.orchestrator.models import ServiceRequest
from payhook.services.orchestrator.service import SnapshotOrchestrator


def _payment(**overrides) -> ProviderPayment:
    fields = {
        "provider": "mercadopago",
        "payment_id": "PAY1",
        "status": "approved",
        "status_detail": "accredited",
        "normalized_status": NormalizedStatus.APPROVED,
        "external_reference": "REQ1",
        "amount": Decimal("35.00"),
        "currency": "BRL",
    }
    fields.update(overrides)
    return ProviderPayment(**fields)


def _collect(bus) -> list:
    seen = []
    bus.subscribe(PaymentStatusChanged, seen.append)
    return seen


def _snapshot(session_factory, request_id) -> ServiceRequest:
    with session_factory() as db:
        return db.get(ServiceRequest, request_id)


def test_resolution_order(session_factory, bus, make_request):
    by_id = make_request(request_ref="REF-A")
    by_ref = make_request(request_ref="REF-B")
    via_checkout = make_request(request_ref="REF-C")
    via_snapshot = make_request(request_ref="REF-D", payment_checkout_id="pref-snap")
    with session_factory() as db:
        CheckoutStore().create(
            db,
            checkout_id="pref-rec",
            provider="mercadopago",
            request_id=via_checkout,
            product_type="birth_chart",
            status="ACTIVE",
        )
        db.commit()

    orchestrator = SnapshotOrchestrator(session_factory, bus)
    with session_factory() as db:
        assert orchestrator.resolve_request(db, str(by_id), None).request_id == by_id
        assert orchestrator.resolve_request(db, " REF-B ", None).request_id == by_ref
        assert orchestrator.resolve_request(db, "unknown", "pref-rec").request_id == via_checkout
        assert orchestrator.resolve_request(db, None, "pref-snap").request_id == via_snapshot
        assert orchestrator.resolve_request(db, None, None) is None
        assert orchestrator.resolve_request(db, "999", "missing") is None


def test_transition_is_written_and_published_once(session_factory, bus, make_request):
    request_id = make_request()
    seen = _collect(bus)
    orchestrator = SnapshotOrchestrator(session_factory, bus)

    event = orchestrator.update_from_provider_payment(_payment(), "mercadopago")
    again = orchestrator.update_from_provider_payment(_payment(), "mercadopago")

    assert event is not None
    assert event.request_id == request_id
    assert event.previous_status is None
    assert event.normalized_status == NormalizedStatus.APPROVED
    assert again is None
    assert seen == [event]

    snapshot = _snapshot(session_factory, request_id)
    assert snapshot.payment_status == "APPROVED"
    assert snapshot.payment_status_detail == "accredited"
    assert snapshot.payment_id == "PAY1"
    assert snapshot.payment_amount == Decimal("35.00")
    assert snapshot.snapshot_version == 2


def test_late_pending_does_not_regress_approved(session_factory, bus, make_request):
    request_id = make_request()
    seen = _collect(bus)
    orchestrator = SnapshotOrchestrator(session_factory, bus)

    orchestrator.update_from_provider_payment(_payment(), "mercadopago")
    late = orchestrator.update_from_provider_payment(
        _payment(status="in_process", status_detail=None, normalized_status=NormalizedStatus.PENDING),
        "mercadopago",
    )

    assert late is None
    assert len(seen) == 1
    assert _snapshot(session_factory, request_id).payment_status == "APPROVED"


def test_refund_after_approval_is_published(session_factory, bus, make_request):
    make_request()
    seen = _collect(bus)
    orchestrator = SnapshotOrchestrator(session_factory, bus)

    orchestrator.update_from_provider_payment(_payment(), "mercadopago")
    refunded = orchestrator.update_from_provider_payment(
        _payment(status="refunded", normalized_status=NormalizedStatus.REFUNDED), "mercadopago"
    )

    assert refunded.previous_status == "APPROVED"
    assert [e.normalized_status for e in seen] == [NormalizedStatus.APPROVED, NormalizedStatus.REFUNDED]


def test_new_payment_id_with_same_status_is_published(session_factory, bus, make_request):
    make_request()
    seen = _collect(bus)
    orchestrator = SnapshotOrchestrator(session_factory, bus)

    orchestrator.update_from_provider_payment(
        _payment(status="rejected", normalized_status=NormalizedStatus.REJECTED), "mercadopago"
    )
    orchestrator.update_from_provider_payment(
        _payment(payment_id="PAY2", status="rejected", normalized_status=NormalizedStatus.REJECTED),
        "mercadopago",
    )

    assert [e.payment_id for e in seen] == ["PAY1", "PAY2"]


def test_unknown_request_is_ignored(session_factory, bus):
    seen = _collect(bus)
    orchestrator = SnapshotOrchestrator(session_factory, bus)

    assert orchestrator.update_from_provider_payment(_payment(external_reference="nope"), "mercadopago") is None
    assert seen == []


def test_record_checkout_and_replay(session_factory, bus, make_request):
    request_id = make_request()
    seen = _collect(bus)
    orchestrator = SnapshotOrchestrator(session_factory, bus)

    assert orchestrator.record_checkout(
        request_id, "pagbank", "CHEC_1", "https://pay.example/CHEC_1", amount=Decimal("35.00"), currency="BRL"
    )
    assert not orchestrator.record_checkout(999, "pagbank", "CHEC_X", None)
    assert orchestrator.replay_snapshot_event(request_id) is None

    snapshot = _snapshot(session_factory, request_id)
    assert snapshot.payment_checkout_id == "CHEC_1"
    assert snapshot.payment_link == "https://pay.example/CHEC_1"
    assert snapshot.payment_status is None

    orchestrator.update_from_provider_payment(
        _payment(provider="pagbank", external_reference=None, checkout_id="CHEC_1"), "pagbank"
    )
    replayed = orchestrator.replay_snapshot_event(request_id)

    assert replayed.normalized_status == NormalizedStatus.APPROVED
    assert replayed.checkout_id == "CHEC_1"
    assert replayed.provider == "pagbank"
    assert len(seen) == 2
    assert seen[1].event_id == replayed.event_id
