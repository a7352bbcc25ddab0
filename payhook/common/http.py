"""Outbound JSON calls with bounded exponential backoff and jitter.

Only 429/502/503/504 responses and timeouts/connection errors are retried; any
other 4xx/5xx fails on the first attempt.
"""

import random
import time
from dataclasses import dataclass
from typing import Any, Callable

import httpx

from payhook.common.errors import UpstreamError
from payhook.common.logging import logger
from payhook.common.metrics import outbound_call_seconds, retries_total


TRANSIENT_STATUS_CODES = frozenset({429, 502, 503, 504})


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    jitter: float = 0.3

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number `attempt` (1-based); jitter only adds."""

        delay = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        return delay * (1 + random.uniform(0, self.jitter))


@dataclass
class CallResult:
    status_code: int
    attempts: int
    duration_ms: int
    body: Any


def post_json_with_retry(
    client: httpx.Client,
    url: str,
    payload: dict,
    *,
    dependency: str,
    policy: RetryPolicy,
    headers: dict[str, str] | None = None,
    auth: httpx.Auth | tuple[str, str] | None = None,
    timeout: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
    service_name: str = "payhook",
) -> CallResult:
    """POST `payload` as JSON and return the decoded response.

    Raises `UpstreamError` with the attempt count and elapsed time so failed
    jobs can record the same metrics as successful ones.
    """

    start = time.perf_counter()
    attempt = 0
    last_status = 0
    last_detail = ""
    while True:
        attempt += 1
        try:
            resp = client.post(
                url,
                json=payload,
                headers=headers,
                auth=auth if auth is not None else httpx.USE_CLIENT_DEFAULT,
                timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
            )
            last_status = resp.status_code
            transient = resp.status_code in TRANSIENT_STATUS_CODES
            last_detail = "" if resp.status_code < 400 else resp.text[:200]
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            resp = None
            last_status = 0
            transient = True
            last_detail = type(exc).__name__

        elapsed_ms = int((time.perf_counter() - start) * 1000)
        if resp is not None and resp.status_code < 400:
            outbound_call_seconds.labels(dependency=dependency).observe(elapsed_ms / 1000)
            return CallResult(
                status_code=resp.status_code,
                attempts=attempt,
                duration_ms=elapsed_ms,
                body=_decode_body(resp),
            )

        if not transient or attempt >= policy.max_attempts:
            outbound_call_seconds.labels(dependency=dependency).observe(elapsed_ms / 1000)
            raise UpstreamError(
                dependency,
                last_status,
                transient=transient,
                attempts=attempt,
                duration_ms=elapsed_ms,
                detail=last_detail,
            )

        backoff = policy.delay_for(attempt)
        retries_total.labels(service=service_name, dependency=dependency).inc()
        logger.warning(
            "outbound transient failure dependency=%s status=%s attempt=%s backoff_s=%.2f",
            dependency,
            last_status,
            attempt,
            backoff,
        )
        sleep(backoff)


def _decode_body(resp: httpx.Response) -> Any:
    content_type = resp.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            return resp.json()
        except ValueError:
            return None
    return resp.text
