"""Typed in-process publish/subscribe for payment domain events.

Delivery is synchronous and best-effort: nothing is persisted, and a failing
subscriber is logged without affecting the others. Durable state lives in the
request snapshot, so missed events can be re-derived from it.
"""

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from threading import Lock
from typing import Generic, TypeVar
from uuid import uuid4

from pydantic import BaseModel, Field

from payhook.common.logging import logger


class NormalizedStatus(str, Enum):
    """Provider-agnostic payment lifecycle state."""

    APPROVED = "APPROVED"
    PENDING = "PENDING"
    REJECTED = "REJECTED"
    CANCELED = "CANCELED"
    REFUNDED = "REFUNDED"
    CHARGED_BACK = "CHARGED_BACK"
    EXPIRED = "EXPIRED"
    UPDATED = "UPDATED"


class PaymentStatusChanged(BaseModel):
    """Announced after the orchestrator commits a snapshot transition."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    request_id: int
    product_type: str
    provider: str
    normalized_status: NormalizedStatus
    previous_status: str | None = None
    status_detail: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    checkout_id: str | None = None
    payment_id: str | None = None
    authorized_at: datetime | None = None


E = TypeVar("E", bound=BaseModel)


@dataclass(frozen=True)
class Subscription(Generic[E]):
    handler: Callable[[E], None]
    product_type: str | None = None
    statuses: frozenset[NormalizedStatus] | None = None
    name: str = ""

    def matches(self, event: BaseModel) -> bool:
        if self.product_type is not None and getattr(event, "product_type", None) != self.product_type:
            return False
        if self.statuses is not None and getattr(event, "normalized_status", None) not in self.statuses:
            return False
        return True


class EventBus:
    """Registry of handlers keyed by event class."""

    def __init__(self) -> None:
        self._subscriptions: dict[type[BaseModel], list[Subscription]] = {}
        self._lock = Lock()

    def subscribe(
        self,
        event_type: type[E],
        handler: Callable[[E], None],
        *,
        product_type: str | None = None,
        statuses: Iterable[NormalizedStatus] | None = None,
    ) -> Subscription[E]:
        subscription = Subscription(
            handler=handler,
            product_type=product_type,
            statuses=frozenset(statuses) if statuses is not None else None,
            name=getattr(handler, "__qualname__", repr(handler)),
        )
        with self._lock:
            self._subscriptions.setdefault(event_type, []).append(subscription)
        return subscription

    def unsubscribe(self, event_type: type[E], subscription: Subscription[E]) -> None:
        with self._lock:
            handlers = self._subscriptions.get(event_type, [])
            if subscription in handlers:
                handlers.remove(subscription)

    def publish(self, event: BaseModel) -> int:
        """Deliver `event` to matching subscribers; return how many ran cleanly."""

        with self._lock:
            targets = [s for s in self._subscriptions.get(type(event), []) if s.matches(event)]
        delivered = 0
        for subscription in targets:
            try:
                subscription.handler(event)
                delivered += 1
            except Exception as exc:
                logger.exception(
                    "event_handler_error event_type=%s handler=%s error=%s",
                    type(event).__name__,
                    subscription.name,
                    exc,
                )
        return delivered
