"""HTTP surface: provider webhooks, internal checkout creation, health and metrics.

Webhook routes answer 200 for every known provider, including on internal
failure, because providers treat anything else as a reason to retry.
"""

import hmac
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from payhook.common.config import settings
from payhook.common.errors import ConfigurationError, UpstreamError
from payhook.common.logging import logger, trace_id_ctx
from payhook.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from payhook.services.ingestion.schemas import CheckoutCreateRequest, CheckoutResponse
from payhook.services.ingestion.service import CheckoutService, IngestionService


def create_app(
    ingestion: IngestionService,
    checkouts: CheckoutService | None = None,
    *,
    api_key: str | None = None,
    lifespan=None,
) -> FastAPI:
    app = FastAPI(title="payhook", lifespan=lifespan)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency for every HTTP call."""

        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(
                service=settings.service_name,
                route=route,
                method=method,
            ).observe(elapsed)
            http_requests_total.labels(
                service=settings.service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()

    @app.middleware("http")
    async def correlation_middleware(request: Request, call_next):
        trace_id = request.headers.get("x-correlation-id") or request.headers.get("x-request-id") or str(uuid4())
        token = trace_id_ctx.set(trace_id)
        try:
            response = await call_next(request)
        finally:
            trace_id_ctx.reset(token)
        response.headers["X-Request-Id"] = trace_id
        response.headers["Cache-Control"] = "no-store"
        return response

    def enforce_api_key(x_api_key: str | None) -> None:
        """Reject requests that do not provide the configured API key."""

        if not api_key or not x_api_key or not hmac.compare_digest(x_api_key.encode(), api_key.encode()):
            raise HTTPException(status_code=401, detail="invalid API key")

    async def receive(provider: str, request: Request, path_secret: str | None) -> dict:
        if not ingestion.supports(provider):
            raise HTTPException(status_code=404, detail="unknown provider")
        raw_body = await request.body()
        ack = await run_in_threadpool(
            ingestion.handle_webhook,
            provider,
            raw_body,
            dict(request.headers),
            dict(request.query_params),
            path_secret,
        )
        return ack.model_dump(exclude_none=True)

    @app.post("/webhooks/{provider}")
    async def webhook(provider: str, request: Request):
        return await receive(provider, request, None)

    @app.post("/webhooks/{provider}/{path_secret}")
    async def webhook_with_secret(provider: str, path_secret: str, request: Request):
        return await receive(provider, request, path_secret)

    @app.get("/webhooks/{provider}")
    @app.get("/webhooks/{provider}/{path_secret}")
    def webhook_reachability(provider: str, path_secret: str | None = None):
        """Providers call the URL with GET when the endpoint is registered."""

        if not ingestion.supports(provider):
            raise HTTPException(status_code=404, detail="unknown provider")
        return {"ok": True}

    @app.post("/internal/checkouts", response_model=CheckoutResponse)
    def create_checkout(req: CheckoutCreateRequest, x_api_key: str | None = Header(default=None)):
        enforce_api_key(x_api_key)
        if checkouts is None:
            raise HTTPException(status_code=503, detail="checkout creation disabled")
        try:
            return checkouts.create(req)
        except LookupError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ConfigurationError as exc:
            logger.warning("checkout_not_configured provider=%s error=%s", req.provider, exc)
            raise HTTPException(status_code=503, detail="provider not configured") from exc
        except UpstreamError as exc:
            logger.warning("checkout_upstream_failed provider=%s error=%s", req.provider, exc.describe())
            raise HTTPException(status_code=502, detail=exc.code) from exc

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/metrics")
    def metrics():
        return metrics_response()

    return app
