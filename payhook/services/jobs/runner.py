"""Product job execution and the birth-chart workflow.

A job row is inserted as RUNNING with the next attempt number before any work
happens. The unique constraints on `product_jobs` are what make concurrent
triggers safe: the loser of an insert race does nothing, and at most one row
per (request, product, trigger) can reach SUCCEEDED.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Mapping

import httpx
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from payhook.common.db import dialect_insert
from payhook.common.errors import ConfigurationError, PayhookError, SnapshotMismatchError, UpstreamError, truncate_error
from payhook.common.events import EventBus, NormalizedStatus, PaymentStatusChanged
from payhook.common.http import CallResult, RetryPolicy, post_json_with_retry
from payhook.common.logging import logger, request_id_ctx
from payhook.common.metrics import product_jobs_total
from payhook.common.state_machine import validate_transition
from payhook.services.jobs.enrichment import build_enrichment_payload, validate_enrichment_response
from payhook.services.jobs.models import ProductJob, ScheduledTrigger
from payhook.services.orchestrator.models import ServiceRequest


ENRICHMENT = "enrichment"
DOWNSTREAM_WEBHOOK = "downstream_webhook"


@dataclass
class JobMetrics:
    enrichment_http_status: int | None = None
    enrichment_attempts: int | None = None
    enrichment_duration_ms: int | None = None
    webhook_http_status: int | None = None
    webhook_attempts: int | None = None
    webhook_duration_ms: int | None = None

    def record(self, dependency: str, status_code: int, attempts: int, duration_ms: int) -> None:
        prefix = "enrichment" if dependency == ENRICHMENT else "webhook"
        setattr(self, f"{prefix}_http_status", status_code)
        setattr(self, f"{prefix}_attempts", attempts)
        setattr(self, f"{prefix}_duration_ms", duration_ms)

    def record_call(self, dependency: str, result: CallResult) -> None:
        self.record(dependency, result.status_code, result.attempts, result.duration_ms)


class ProductJobRunner:
    """Runs idempotent, attempt-numbered jobs and records their outcome."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def has_succeeded(self, request_id: int, product_type: str, trigger_status: str) -> bool:
        with self.session_factory() as db:
            return (
                db.execute(
                    select(ProductJob.job_id).where(
                        ProductJob.request_id == request_id,
                        ProductJob.product_type == product_type,
                        ProductJob.trigger_status == trigger_status,
                        ProductJob.status == "SUCCEEDED",
                    )
                ).first()
                is not None
            )

    def _start(self, request_id: int, product_type: str, trigger_status: str) -> ProductJob | None:
        if self.has_succeeded(request_id, product_type, trigger_status):
            logger.info(
                "product_job_already_succeeded request_id=%s product_type=%s trigger=%s",
                request_id,
                product_type,
                trigger_status,
            )
            return None
        with self.session_factory() as db:
            last_attempt = db.execute(
                select(func.max(ProductJob.attempt)).where(
                    ProductJob.request_id == request_id,
                    ProductJob.product_type == product_type,
                    ProductJob.trigger_status == trigger_status,
                )
            ).scalar_one()
            job = ProductJob(
                request_id=request_id,
                product_type=product_type,
                trigger_status=trigger_status,
                status="RUNNING",
                attempt=(last_attempt or 0) + 1,
            )
            db.add(job)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.info(
                    "product_job_claim_lost request_id=%s product_type=%s trigger=%s attempt=%s",
                    request_id,
                    product_type,
                    trigger_status,
                    job.attempt,
                )
                return None
            return job

    def run(
        self,
        request_id: int,
        product_type: str,
        trigger_status: str,
        work: Callable[[JobMetrics], None],
    ) -> ProductJob | None:
        """Execute `work` under a new attempt; `None` when another attempt owns or finished it."""

        job = self._start(request_id, product_type, trigger_status)
        if job is None:
            return None
        metrics = JobMetrics()
        logger.info(
            "product_job_started job_id=%s request_id=%s product_type=%s trigger=%s attempt=%s",
            job.job_id,
            request_id,
            product_type,
            trigger_status,
            job.attempt,
        )
        try:
            work(metrics)
        except UpstreamError as exc:
            metrics.record(exc.dependency, exc.status_code, exc.attempts, exc.duration_ms)
            return self._finish(job, "FAILED", metrics, exc.describe())
        except PayhookError as exc:
            return self._finish(job, "FAILED", metrics, exc.describe())
        except Exception as exc:
            logger.exception("product_job_unexpected_error job_id=%s error=%s", job.job_id, exc)
            return self._finish(job, "FAILED", metrics, f"unexpected:{type(exc).__name__}:{exc}")
        return self._finish(job, "SUCCEEDED", metrics, None)

    def _finish(self, job: ProductJob, status: str, metrics: JobMetrics, error: str | None) -> ProductJob:
        validate_transition(job.status, status)
        values = {
            "status": status,
            "enrichment_http_status": metrics.enrichment_http_status,
            "enrichment_attempts": metrics.enrichment_attempts,
            "enrichment_duration_ms": metrics.enrichment_duration_ms,
            "webhook_http_status": metrics.webhook_http_status,
            "webhook_attempts": metrics.webhook_attempts,
            "webhook_duration_ms": metrics.webhook_duration_ms,
            "error_message": truncate_error(error) if error else None,
            "finished_at": datetime.now(timezone.utc),
        }
        with self.session_factory() as db:
            try:
                db.execute(
                    update(ProductJob)
                    .where(ProductJob.job_id == job.job_id, ProductJob.status == "RUNNING")
                    .values(**values)
                )
                db.commit()
            except IntegrityError:
                # Another attempt reached SUCCEEDED first.
                db.rollback()
                status = "FAILED"
                values.update(status=status, error_message="superseded:concurrent_success")
                db.execute(
                    update(ProductJob)
                    .where(ProductJob.job_id == job.job_id, ProductJob.status == "RUNNING")
                    .values(**values)
                )
                db.commit()
            finished = db.get(ProductJob, job.job_id, populate_existing=True)

        product_jobs_total.labels(
            product_type=job.product_type,
            trigger_status=job.trigger_status,
            outcome=status,
        ).inc()
        log = logger.info if status == "SUCCEEDED" else logger.warning
        log(
            "product_job_finished job_id=%s status=%s attempt=%s error=%s",
            job.job_id,
            status,
            job.attempt,
            values["error_message"],
        )
        return finished


BIRTH_CHART = "birth_chart"
TRIGGER_APPROVED = NormalizedStatus.APPROVED.value
PENDING_FOLLOWUPS = {"PENDING_10M": 10 * 60, "PENDING_24H": 24 * 60 * 60}


def _json_value(value):
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def request_view(req: ServiceRequest) -> dict:
    """JSON-safe request fields shared with the downstream automation."""

    return {
        "request_id": req.request_id,
        "request_ref": req.request_ref,
        "product_type": req.product_type,
        "name": req.name,
        "email": req.email,
        "birth_date": req.birth_date,
        "birth_time": req.birth_time,
        "birth_place": req.birth_place,
        "birth_place_lat": req.birth_place_lat,
        "birth_place_lng": req.birth_place_lng,
        "birth_utc_offset_min": req.birth_utc_offset_min,
        "birth_timezone_id": req.birth_timezone_id,
        "payment": payment_view(req),
    }


def payment_view(req: ServiceRequest) -> dict:
    return {
        "provider": req.payment_provider,
        "status": req.payment_status,
        "status_detail": req.payment_status_detail,
        "amount": _json_value(req.payment_amount),
        "currency": req.payment_currency,
        "checkout_id": req.payment_checkout_id,
        "payment_id": req.payment_id,
        "link": req.payment_link,
        "authorized_at": _json_value(req.payment_authorized_at),
        "updated_at": _json_value(req.payment_updated_at),
    }


class BirthChartWorkflow:
    """Paid birth-chart fulfilment plus pending-payment follow-ups."""

    product_type = BIRTH_CHART

    def __init__(
        self,
        session_factory,
        runner: ProductJobRunner,
        client: httpx.Client,
        *,
        enrichment_url: str | None,
        enrichment_api_key: str | None,
        approved_webhook_url: str | None,
        followup_urls: Mapping[str, str | None] | None = None,
        enrichment_basic_auth: tuple[str, str] | None = None,
        enrichment_timeout: float = 12.0,
        downstream_timeout: float = 10.0,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session_factory = session_factory
        self.runner = runner
        self.client = client
        self.enrichment_url = enrichment_url
        self.enrichment_api_key = enrichment_api_key
        self.approved_webhook_url = approved_webhook_url
        self.followup_urls = dict(followup_urls or {})
        self.enrichment_basic_auth = enrichment_basic_auth
        self.enrichment_timeout = enrichment_timeout
        self.downstream_timeout = downstream_timeout
        self.policy = policy or RetryPolicy()
        self.sleep = sleep

    def register(self, bus: EventBus) -> None:
        bus.subscribe(
            PaymentStatusChanged,
            self.on_payment_status_changed,
            product_type=self.product_type,
            statuses=[NormalizedStatus.APPROVED, NormalizedStatus.PENDING],
        )

    def on_payment_status_changed(self, event: PaymentStatusChanged) -> None:
        request_id_ctx.set(str(event.request_id))
        if event.normalized_status == NormalizedStatus.APPROVED:
            self.run_approved(event.request_id)
        elif event.normalized_status == NormalizedStatus.PENDING:
            self.schedule_followups(event.request_id, event.provider)

    def has_destination(self, kind: str) -> bool:
        return bool(self.followup_urls.get(kind))

    def run_approved(self, request_id: int) -> ProductJob | None:
        if not self.enrichment_url or not self.approved_webhook_url:
            logger.warning(
                "product_job_skipped request_id=%s product_type=%s reason=%s",
                request_id,
                self.product_type,
                ConfigurationError.code,
            )
            return None
        return self.runner.run(
            request_id,
            self.product_type,
            TRIGGER_APPROVED,
            lambda metrics: self._approved_work(request_id, metrics),
        )

    def _load_request(self, request_id: int) -> ServiceRequest:
        with self.session_factory() as db:
            req = db.get(ServiceRequest, request_id)
        if req is None:
            raise SnapshotMismatchError(f"request {request_id} not found")
        return req

    def _approved_work(self, request_id: int, metrics: JobMetrics) -> None:
        req = self._load_request(request_id)
        if req.payment_status != NormalizedStatus.APPROVED.value:
            raise SnapshotMismatchError(f"expected APPROVED, found {req.payment_status}")

        payload = build_enrichment_payload(req)
        headers = {"X-API-KEY": self.enrichment_api_key} if self.enrichment_api_key else {}
        enrichment = post_json_with_retry(
            self.client,
            self.enrichment_url,
            payload,
            dependency=ENRICHMENT,
            policy=self.policy,
            headers=headers,
            auth=self.enrichment_basic_auth,
            timeout=self.enrichment_timeout,
            sleep=self.sleep,
        )
        metrics.record_call(ENRICHMENT, enrichment)
        enrichment_result = validate_enrichment_response(enrichment.body)

        delivery = post_json_with_retry(
            self.client,
            self.approved_webhook_url,
            {
                "request": request_view(req),
                "enrichment_result": enrichment_result,
                "meta": self._meta(req, TRIGGER_APPROVED),
            },
            dependency=DOWNSTREAM_WEBHOOK,
            policy=self.policy,
            timeout=self.downstream_timeout,
            sleep=self.sleep,
        )
        metrics.record_call(DOWNSTREAM_WEBHOOK, delivery)

    def schedule_followups(self, request_id: int, provider: str | None, now: datetime | None = None) -> int:
        """Insert the pending-payment follow-ups once; return how many were new."""

        now = now or datetime.now(timezone.utc)
        created = 0
        with self.session_factory() as db:
            for kind, delay_seconds in PENDING_FOLLOWUPS.items():
                stmt = (
                    dialect_insert(db, ScheduledTrigger)
                    .values(
                        request_id=request_id,
                        product_type=self.product_type,
                        kind=kind,
                        provider=provider,
                        due_at=now + timedelta(seconds=delay_seconds),
                        state="pending",
                    )
                    .on_conflict_do_nothing(index_elements=["request_id", "product_type", "kind"])
                )
                created += db.execute(stmt).rowcount or 0
            db.commit()
        logger.info("followups_scheduled request_id=%s created=%s", request_id, created)
        return created

    def run_followup(self, request_id: int, kind: str) -> ProductJob | None:
        """Slim job for a delayed trigger: no enrichment, one downstream POST."""

        url = self.followup_urls.get(kind)
        if not url:
            raise ConfigurationError(f"no destination for {kind}")

        def work(metrics: JobMetrics) -> None:
            req = self._load_request(request_id)
            payload = {
                "request": {
                    "request_id": req.request_id,
                    "request_ref": req.request_ref,
                    "product_type": req.product_type,
                    "name": req.name,
                    "email": req.email,
                    "payment": payment_view(req),
                },
                "jobs": {"kind": kind},
                "meta": self._meta(req, kind),
            }
            delivery = post_json_with_retry(
                self.client,
                url,
                payload,
                dependency=DOWNSTREAM_WEBHOOK,
                policy=self.policy,
                timeout=self.downstream_timeout,
                sleep=self.sleep,
            )
            metrics.record_call(DOWNSTREAM_WEBHOOK, delivery)

        return self.runner.run(request_id, self.product_type, kind, work)

    def _meta(self, req: ServiceRequest, trigger: str) -> dict:
        return {
            "product_type": self.product_type,
            "trigger": trigger,
            "request_id": req.request_id,
            "sent_at": datetime.now(timezone.utc).isoformat(),
        }
