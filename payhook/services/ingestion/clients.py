"""Thin HTTP clients for the payment providers' REST APIs."""

from decimal import Decimal
from uuid import uuid4

import time

import httpx

from payhook.common.errors import ConfigurationError, UpstreamError
from payhook.common.logging import logger
from payhook.services.ingestion.schemas import CheckoutCreateRequest


class MercadoPagoClient:
    """Payments lookup and Checkout Pro preference creation."""

    dependency = "mercadopago_api"

    def __init__(
        self,
        access_token: str | None,
        base_url: str = "https://api.mercadopago.com",
        *,
        notification_url: str | None = None,
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.access_token = access_token or None
        self.base_url = base_url.rstrip("/")
        self.notification_url = notification_url
        self.timeout = timeout
        self.transport = transport

    @property
    def configured(self) -> bool:
        return self.access_token is not None

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self.transport,
            headers={"Authorization": f"Bearer {self.access_token}", "Accept": "application/json"},
        )

    def fetch_payment(self, payment_id: str) -> dict | None:
        """Authoritative payment state; `None` when unavailable for any reason."""

        if not self.configured:
            return None
        try:
            with self._client() as client:
                resp = client.get(f"/v1/payments/{payment_id}")
        except httpx.HTTPError as exc:
            logger.warning("provider_fetch_failed provider=mercadopago payment_id=%s error=%s", payment_id, exc)
            return None
        if resp.status_code != 200:
            logger.warning(
                "provider_fetch_failed provider=mercadopago payment_id=%s status=%s",
                payment_id,
                resp.status_code,
            )
            return None
        try:
            body = resp.json()
        except ValueError:
            return None
        return body if isinstance(body, dict) else None

    def create_checkout(self, req: CheckoutCreateRequest) -> dict:
        if not self.configured:
            raise ConfigurationError("MP_ACCESS_TOKEN is not configured")
        payload = {
            "external_reference": str(req.request_id),
            "items": [
                {
                    "title": req.product_name or "Produto",
                    "quantity": 1,
                    "unit_price": float(Decimal(req.amount_cents) / 100),
                    "currency_id": req.currency.upper(),
                }
            ],
            "metadata": {"source": "backend"},
        }
        if req.payer_name or req.payer_email:
            payload["payer"] = {"name": req.payer_name, "email": req.payer_email}
        if req.return_url:
            payload["back_urls"] = {"success": req.return_url}
            payload["auto_return"] = "approved"
        if self.notification_url:
            payload["notification_url"] = self.notification_url

        with self._client() as client:
            resp = client.post("/checkout/preferences", json=payload, headers={"X-Idempotency-Key": str(uuid4())})
        if resp.status_code >= 400:
            raise UpstreamError(
                self.dependency,
                resp.status_code,
                transient=False,
                attempts=1,
                duration_ms=int(resp.elapsed.total_seconds() * 1000),
                detail=resp.text[:200],
            )
        data = resp.json()
        return {
            "checkout_id": str(data.get("id")),
            "status": "ACTIVE",
            "link": data.get("init_point") or data.get("sandbox_init_point"),
            "raw": {"request": payload, "response": data},
        }


class PagBankClient:
    """Hosted checkout creation."""

    dependency = "pagbank_api"

    def __init__(
        self,
        api_token: str | None,
        base_url: str = "https://api.pagseguro.com",
        *,
        notification_url: str | None = None,
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_token = api_token or None
        self.base_url = base_url.rstrip("/")
        self.notification_url = notification_url
        self.timeout = timeout
        self.transport = transport

    @property
    def configured(self) -> bool:
        return self.api_token is not None

    def create_checkout(self, req: CheckoutCreateRequest) -> dict:
        if not self.configured:
            raise ConfigurationError("PAGBANK_API_TOKEN is not configured")
        payload = {
            "reference_id": str(req.request_id),
            "items": [{"name": req.product_name or "Produto", "quantity": 1, "unit_amount": req.amount_cents}],
            "payment_methods": [{"type": "PIX"}, {"type": "CREDIT_CARD"}],
        }
        if req.return_url:
            payload["redirect_url"] = req.return_url
        if self.notification_url:
            payload["notification_urls"] = [self.notification_url]
        if req.payer_name and req.payer_email:
            payload["customer"] = {"name": req.payer_name, "email": req.payer_email}

        with httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
            resp = client.post(
                "/checkouts",
                json=payload,
                headers={
                    "Authorization": f"Bearer {self.api_token}",
                    "Accept": "application/json",
                    "X-Idempotency-Key": str(uuid4()),
                },
            )
        if resp.status_code >= 400:
            raise UpstreamError(
                self.dependency,
                resp.status_code,
                transient=False,
                attempts=1,
                duration_ms=int(resp.elapsed.total_seconds() * 1000),
                detail=resp.text[:200],
            )
        data = resp.json()
        return {
            "checkout_id": str(data.get("id")),
            "status": str(data.get("status") or "ACTIVE").upper(),
            "link": _pay_link(data.get("links")),
            "raw": {"request": payload, "response": data},
        }


def _pay_link(links) -> str | None:
    if not isinstance(links, list):
        return None
    by_rel = {str(link.get("rel", "")).upper(): link.get("href") for link in links if isinstance(link, dict)}
    return by_rel.get("PAY") or by_rel.get("CHECKOUT") or by_rel.get("SELF")


class PayPalClient:
    """Capture lookup and webhook signature verification over the REST API.

    Both calls authenticate with an OAuth2 client-credentials token that is
    cached until shortly before it expires.
    """

    dependency = "paypal_api"
    transmission_headers = (
        "paypal-auth-algo",
        "paypal-cert-url",
        "paypal-transmission-id",
        "paypal-transmission-sig",
        "paypal-transmission-time",
    )

    def __init__(
        self,
        client_id: str | None,
        client_secret: str | None,
        base_url: str = "https://api-m.sandbox.paypal.com",
        *,
        webhook_id: str | None = None,
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.client_id = client_id or None
        self.client_secret = client_secret or None
        self.base_url = base_url.rstrip("/")
        self.webhook_id = webhook_id or None
        self.timeout = timeout
        self.transport = transport
        self._token: str | None = None
        self._token_expires_at = 0.0

    @property
    def configured(self) -> bool:
        return self.client_id is not None and self.client_secret is not None

    def _client(self) -> httpx.Client:
        return httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    def access_token(self) -> str | None:
        if not self.configured:
            return None
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        try:
            with self._client() as client:
                resp = client.post(
                    "/v1/oauth2/token",
                    data={"grant_type": "client_credentials"},
                    auth=(self.client_id, self.client_secret),
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as exc:
            logger.warning("provider_auth_failed provider=paypal error=%s", exc)
            return None
        if resp.status_code != 200:
            logger.warning("provider_auth_failed provider=paypal status=%s", resp.status_code)
            return None
        try:
            data = resp.json()
        except ValueError:
            return None
        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            return None
        self._token = token
        self._token_expires_at = time.monotonic() + max(int(data.get("expires_in") or 0) - 60, 0)
        return token

    def _authorized(self, method: str, path: str, **kwargs) -> httpx.Response | None:
        token = self.access_token()
        if token is None:
            return None
        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        try:
            with self._client() as client:
                return client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("provider_request_failed provider=paypal path=%s error=%s", path, exc)
            return None

    def fetch_payment(self, capture_id: str) -> dict | None:
        """Authoritative capture state; `None` when unavailable for any reason."""

        resp = self._authorized("GET", f"/v2/payments/captures/{capture_id}")
        if resp is None:
            return None
        if resp.status_code != 200:
            logger.warning(
                "provider_fetch_failed provider=paypal payment_id=%s status=%s", capture_id, resp.status_code
            )
            return None
        try:
            body = resp.json()
        except ValueError:
            return None
        return body if isinstance(body, dict) else None

    def verify_webhook_signature(self, headers: dict[str, str], event: dict) -> bool | None:
        """Ask PayPal whether the transmission headers sign `event`.

        Returns `None` when the answer could not be obtained.
        """

        if self.webhook_id is None:
            return None
        payload = {
            name.removeprefix("paypal-").replace("-", "_"): headers.get(name) for name in self.transmission_headers
        }
        payload["webhook_id"] = self.webhook_id
        payload["webhook_event"] = event
        resp = self._authorized("POST", "/v1/notifications/verify-webhook-signature", json=payload)
        if resp is None:
            return None
        if resp.status_code != 200:
            logger.warning("provider_verify_failed provider=paypal status=%s", resp.status_code)
            return None
        try:
            body = resp.json()
        except ValueError:
            return None
        return isinstance(body, dict) and body.get("verification_status") == "SUCCESS"
