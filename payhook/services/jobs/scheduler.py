"""Delayed trigger scheduler.

Polls `scheduled_triggers` for due rows, leases them through `claimed_at`, and
drives every claimed row to `fired` or `canceled`. Rows whose lease is older
than the claim timeout are reclaimed, so a crashed worker only delays them.
"""

import asyncio
import contextlib
import random
from datetime import datetime, timedelta, timezone
from typing import Mapping

from sqlalchemy import or_, select, update

from payhook.common.events import NormalizedStatus
from payhook.common.logging import logger, request_id_ctx
from payhook.common.metrics import scheduled_triggers_total
from payhook.common.state_machine import validate_schedule_transition
from payhook.services.jobs.models import ScheduledTrigger
from payhook.services.jobs.runner import ProductJobRunner
from payhook.services.orchestrator.models import ServiceRequest


# Snapshot statuses that still warrant a pending-payment follow-up.
PENDING_LIKE = frozenset({NormalizedStatus.PENDING.value})


class DelayedTriggerScheduler:
    def __init__(
        self,
        session_factory,
        runner: ProductJobRunner,
        workflows: Mapping[str, object],
        *,
        poll_seconds: float = 120.0,
        batch_limit: int = 50,
        claim_timeout_seconds: int = 300,
        jitter: float = 0.1,
    ) -> None:
        self.session_factory = session_factory
        self.runner = runner
        self.workflows = dict(workflows)
        self.poll_seconds = poll_seconds
        self.batch_limit = batch_limit
        self.claim_timeout_seconds = claim_timeout_seconds
        self.jitter = jitter

    def claim_due(self, now: datetime | None = None) -> list[str]:
        """Lease up to `batch_limit` due pending rows and return their ids."""

        now = now or datetime.now(timezone.utc)
        stale_before = now - timedelta(seconds=self.claim_timeout_seconds)
        with self.session_factory() as db:
            ids = (
                db.execute(
                    select(ScheduledTrigger.sched_id)
                    .where(
                        ScheduledTrigger.state == "pending",
                        ScheduledTrigger.due_at <= now,
                        or_(ScheduledTrigger.claimed_at.is_(None), ScheduledTrigger.claimed_at < stale_before),
                    )
                    .order_by(ScheduledTrigger.due_at)
                    .limit(self.batch_limit)
                    .with_for_update(skip_locked=True)
                )
                .scalars()
                .all()
            )
            if ids:
                db.execute(
                    update(ScheduledTrigger).where(ScheduledTrigger.sched_id.in_(ids)).values(claimed_at=now)
                )
            db.commit()
        return list(ids)

    def process_batch(self, now: datetime | None = None) -> dict[str, int]:
        """Claim and settle one batch; return counts by terminal state."""

        counts = {"fired": 0, "canceled": 0}
        for sched_id in self.claim_due(now):
            state = self.process_one(sched_id)
            if state in counts:
                counts[state] += 1
        if counts["fired"] or counts["canceled"]:
            logger.info("scheduler_batch fired=%s canceled=%s", counts["fired"], counts["canceled"])
        return counts

    def process_one(self, sched_id: str) -> str | None:
        with self.session_factory() as db:
            trigger = db.get(ScheduledTrigger, sched_id)
            if trigger is None or trigger.state != "pending":
                return None
            request_id, product_type, kind = trigger.request_id, trigger.product_type, trigger.kind
        request_id_ctx.set(str(request_id))

        try:
            workflow = self.workflows.get(product_type)
            if workflow is None:
                return self._settle(sched_id, kind, "canceled", f"unexpected_product_type:{product_type}")
            if not workflow.has_destination(kind):
                return self._settle(sched_id, kind, "canceled", "no_destination")

            with self.session_factory() as db:
                req = db.get(ServiceRequest, request_id)
                payment_status = req.payment_status if req is not None else None
            if req is None:
                return self._settle(sched_id, kind, "canceled", "request_missing")
            if payment_status not in PENDING_LIKE:
                return self._settle(sched_id, kind, "canceled", f"status:{payment_status}")
            if self.runner.has_succeeded(request_id, product_type, kind):
                return self._settle(sched_id, kind, "fired", None)

            job = workflow.run_followup(request_id, kind)
            logger.info(
                "scheduled_trigger_job sched_id=%s kind=%s job_status=%s",
                sched_id,
                kind,
                job.status if job is not None else "skipped",
            )
            return self._settle(sched_id, kind, "fired", None)
        except Exception as exc:
            logger.exception("scheduled_trigger_error sched_id=%s kind=%s error=%s", sched_id, kind, exc)
            return self._settle(sched_id, kind, "canceled", f"error:{type(exc).__name__}")

    def _settle(self, sched_id: str, kind: str, state: str, reason: str | None) -> str | None:
        validate_schedule_transition("pending", state)
        now = datetime.now(timezone.utc)
        values = {"state": state}
        if state == "fired":
            values["fired_at"] = now
        else:
            values["canceled_at"] = now
            values["cancel_reason"] = reason
        with self.session_factory() as db:
            result = db.execute(
                update(ScheduledTrigger)
                .where(ScheduledTrigger.sched_id == sched_id, ScheduledTrigger.state == "pending")
                .values(**values)
            )
            db.commit()
        if result.rowcount != 1:
            return None
        scheduled_triggers_total.labels(kind=kind, state=state).inc()
        logger.info("scheduled_trigger_settled sched_id=%s kind=%s state=%s reason=%s", sched_id, kind, state, reason)
        return state

    def next_delay(self) -> float:
        return self.poll_seconds * (1 + random.uniform(-self.jitter, self.jitter))

    async def run_forever(self) -> None:
        """Poll until cancelled; batches run in a worker thread."""

        while True:
            try:
                await asyncio.to_thread(self.process_batch)
            except Exception as exc:
                logger.exception("scheduler_batch_failed error=%s", exc)
            await asyncio.sleep(self.next_delay())

    async def stop(self, task: asyncio.Task) -> None:
        """Cancel the polling task and wait until it has unwound."""

        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("scheduler_stopped")
