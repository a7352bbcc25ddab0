"""Webhook service API + lifecycle.

Wires verifiers, stores, the snapshot orchestrator, the event bus and product
workflows into one FastAPI app, and runs the delayed trigger scheduler as a
background task.
"""

import asyncio
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from payhook.common.config import settings
from payhook.common.db import SessionLocal
from payhook.common.events import EventBus
from payhook.common.http import RetryPolicy
from payhook.common.logging import configure_logging
from payhook.common.startup import log_startup_config
from payhook.common.tracing import instrument_app, setup_tracing
from payhook.services.ingestion.api import create_app
from payhook.services.ingestion.clients import MercadoPagoClient, PagBankClient, PayPalClient
from payhook.services.ingestion.service import CheckoutService, IngestionService
from payhook.services.ingestion.verifier import (
    AuthenticityTokenVerifier,
    ManifestSignatureVerifier,
    PayPalTransmissionVerifier,
)
from payhook.services.jobs.runner import BirthChartWorkflow, ProductJobRunner
from payhook.services.jobs.scheduler import DelayedTriggerScheduler
from payhook.services.orchestrator.service import SnapshotOrchestrator

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "POSTGRES_DSN",
        "SECRETS_DIR",
        "MP_WEBHOOK_SECRET",
        "PAGBANK_API_TOKEN",
        "PAYPAL_WEBHOOK_ID",
        "PAYPAL_API_BASE_URL",
        "WEBHOOK_TOLERANCE_SECONDS",
        "ENRICHMENT_API_URL",
        "APPROVED_WEBHOOK_URL",
        "PENDING_10M_WEBHOOK_URL",
        "PENDING_24H_WEBHOOK_URL",
        "SCHEDULER_ENABLED",
        "SCHEDULER_POLL_SECONDS",
    ],
)


def _secret(value) -> str | None:
    return value.get_secret_value() if value is not None else None


path_secret = _secret(settings.webhook_path_secret)

mercadopago = MercadoPagoClient(
    _secret(settings.mp_access_token),
    settings.mp_api_base_url,
    notification_url=settings.mp_notification_url,
    timeout=settings.provider_http_timeout_seconds,
)
pagbank = PagBankClient(
    _secret(settings.pagbank_api_token),
    settings.pagbank_api_base_url,
    notification_url=settings.pagbank_notification_url,
    timeout=settings.provider_http_timeout_seconds,
)
paypal = PayPalClient(
    settings.paypal_client_id,
    _secret(settings.paypal_client_secret),
    settings.paypal_api_base_url,
    webhook_id=settings.paypal_webhook_id,
    timeout=settings.provider_http_timeout_seconds,
)

verifier_options = {
    "path_secret": path_secret,
    "tolerance_seconds": settings.webhook_tolerance_seconds,
    "max_entries": settings.replay_cache_max_entries,
}
verifiers = {
    "mercadopago": ManifestSignatureVerifier(_secret(settings.mp_webhook_secret), **verifier_options),
    "pagbank": AuthenticityTokenVerifier(_secret(settings.pagbank_api_token), **verifier_options),
    "paypal": PayPalTransmissionVerifier(
        settings.paypal_webhook_id,
        signature_checker=paypal.verify_webhook_signature if paypal.configured else None,
        **verifier_options,
    ),
}
payment_fetchers = {
    name: client for name, client in (("mercadopago", mercadopago), ("paypal", paypal)) if client.configured
}

bus = EventBus()
orchestrator = SnapshotOrchestrator(SessionLocal, bus)
ingestion = IngestionService(SessionLocal, verifiers, orchestrator, payment_fetchers=payment_fetchers)
checkouts = CheckoutService(SessionLocal, {"mercadopago": mercadopago, "pagbank": pagbank}, orchestrator)

outbound = httpx.Client()
runner = ProductJobRunner(SessionLocal)
basic_user, basic_password = settings.enrichment_basic_user, _secret(settings.enrichment_basic_password)
birth_chart = BirthChartWorkflow(
    SessionLocal,
    runner,
    outbound,
    enrichment_url=settings.enrichment_api_url,
    enrichment_api_key=_secret(settings.enrichment_api_key),
    approved_webhook_url=settings.approved_webhook_url,
    followup_urls={
        "PENDING_10M": settings.pending_10m_webhook_url,
        "PENDING_24H": settings.pending_24h_webhook_url,
    },
    enrichment_basic_auth=(basic_user, basic_password) if basic_user and basic_password else None,
    enrichment_timeout=settings.enrichment_timeout_seconds,
    downstream_timeout=settings.downstream_timeout_seconds,
    policy=RetryPolicy(
        max_attempts=settings.retry_max_attempts,
        base_delay=settings.retry_base_delay_seconds,
        max_delay=settings.retry_max_delay_seconds,
    ),
)
birth_chart.register(bus)
scheduler = DelayedTriggerScheduler(
    SessionLocal,
    runner,
    {birth_chart.product_type: birth_chart},
    poll_seconds=settings.scheduler_poll_seconds,
    batch_limit=settings.scheduler_batch_limit,
    claim_timeout_seconds=settings.scheduler_claim_timeout_seconds,
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Start the delayed trigger loop and close outbound connections on exit."""

    scheduler_task = asyncio.create_task(scheduler.run_forever()) if settings.scheduler_enabled else None
    yield
    if scheduler_task is not None:
        await scheduler.stop(scheduler_task)
    outbound.close()


app = create_app(ingestion, checkouts, api_key=_secret(settings.api_key), lifespan=lifespan)
instrument_app(app)
