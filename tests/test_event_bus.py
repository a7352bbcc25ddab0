from payhook.common.events import EventBus, NormalizedStatus, PaymentStatusChanged


def _event(status=NormalizedStatus.APPROVED, product_type="birth_chart") -> PaymentStatusChanged:
    return PaymentStatusChanged(
        request_id=1,
        product_type=product_type,
        provider="mercadopago",
        normalized_status=status,
    )


def test_filters_by_product_type_and_status():
    bus = EventBus()
    seen = []
    bus.subscribe(
        PaymentStatusChanged,
        seen.append,
        product_type="birth_chart",
        statuses=[NormalizedStatus.APPROVED],
    )

    assert bus.publish(_event()) == 1
    assert bus.publish(_event(status=NormalizedStatus.REJECTED)) == 0
    assert bus.publish(_event(product_type="tarot")) == 0
    assert len(seen) == 1


def test_failing_handler_does_not_block_others():
    bus = EventBus()
    seen = []

    def broken(event):
        raise RuntimeError("boom")

    bus.subscribe(PaymentStatusChanged, broken)
    bus.subscribe(PaymentStatusChanged, seen.append)

    assert bus.publish(_event()) == 1
    assert seen and seen[0].normalized_status == NormalizedStatus.APPROVED


def test_unsubscribe_stops_delivery():
    bus = EventBus()
    seen = []
    subscription = bus.subscribe(PaymentStatusChanged, seen.append)

    bus.unsubscribe(PaymentStatusChanged, subscription)

    assert bus.publish(_event()) == 0
    assert seen == []


def test_event_ids_are_unique():
    assert _event().event_id != _event().event_id
