"""Webhook authentication that records a verdict instead of rejecting.

Providers retry undelivered notifications aggressively, so a failed check is
logged, audited and attached to the event; downstream processing is idempotent
and decides for itself how much to trust the payload.

The replay and audit caches are per-process, bounded and TTL-evicting. They
are advisory noise reduction only and are safe to lose on restart.
"""

import hashlib
import hmac
import json
import re
import time
from collections import OrderedDict
from collections.abc import Callable, Mapping
from datetime import datetime
from threading import Lock

from payhook.common.logging import logger
from payhook.services.ingestion.schemas import VerificationVerdict


SIGNATURE_PART_SPLIT = re.compile(r"[;,]\s*")
RESOURCE_TRAILING_ID = re.compile(r"/(\d+)(?:\?.*)?$")
# Epoch values below this are seconds; 10^11 seconds is roughly year 5138.
SECONDS_MAGNITUDE_LIMIT = 10**11


class TtlCache:
    """Bounded set of recently seen keys with a fixed time-to-live."""

    def __init__(self, ttl_seconds: float, max_entries: int, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, float] = OrderedDict()
        self._lock = Lock()

    def _evict(self, now: float) -> None:
        while self._entries:
            key, expires_at = next(iter(self._entries.items()))
            if expires_at > now:
                break
            self._entries.popitem(last=False)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            now = self._clock()
            self._evict(now)
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            self._evict(self._clock())
            return len(self._entries)

    def check_and_add(self, key: str) -> bool:
        """Remember `key`; return True when it was already present."""

        with self._lock:
            now = self._clock()
            self._evict(now)
            present = key in self._entries
            self._entries.pop(key, None)
            self._entries[key] = now + self.ttl_seconds
            self._evict(now)
            return present

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


def parse_signature_header(value: str | None) -> dict[str, str] | None:
    """Parse `ts=...,v1=...` (`,` or `;` separated) keeping field order."""

    if not value:
        return None
    fields: dict[str, str] = {}
    for part in SIGNATURE_PART_SPLIT.split(value.strip()):
        name, sep, field_value = part.partition("=")
        name, field_value = name.strip(), field_value.strip()
        if sep and name and field_value:
            fields[name] = field_value
    if "ts" not in fields or "v1" not in fields:
        return None
    return fields


def extract_resource_id(body) -> str | None:
    """Find the signed resource id: `data.id`, then `id`, then `resource`."""

    if not isinstance(body, dict):
        return None
    data = body.get("data")
    if isinstance(data, dict) and data.get("id") is not None:
        return str(data["id"])
    if body.get("id") is not None and not isinstance(body["id"], (dict, list)):
        return str(body["id"])
    resource = body.get("resource")
    if isinstance(resource, str):
        match = RESOURCE_TRAILING_ID.search(resource)
        if match:
            return match.group(1)
        if resource.isdigit():
            return resource
    if isinstance(resource, int):
        return str(resource)
    return None


def build_manifest(resource_id: str, request_id: str, ts: str) -> str:
    return f"id:{resource_id};request-id:{request_id};ts:{ts};"


def sign_manifest(manifest: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), manifest.encode("utf-8"), hashlib.sha256).hexdigest()


def signature_matches(manifest: str, secret: str, signature: str) -> bool:
    """Constant-time comparison of a hex HMAC against the manifest."""

    try:
        provided = bytes.fromhex(signature)
    except ValueError:
        return False
    expected = bytes.fromhex(sign_manifest(manifest, secret))
    return hmac.compare_digest(expected, provided)


def to_milliseconds(ts: int) -> int:
    return ts * 1000 if abs(ts) < SECONDS_MAGNITUDE_LIMIT else ts


def _lower_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {str(k).lower(): str(v) for k, v in headers.items()}


def _parse_json(raw_body: bytes):
    try:
        return json.loads(raw_body.decode("utf-8")) if raw_body else None
    except (UnicodeDecodeError, ValueError):
        return None


class WebhookVerifier:
    """Shared verdict plumbing: path secret, replay cache, audit rate limiting."""

    provider = "unknown"
    correlation_header = "x-request-id"

    def __init__(
        self,
        secret: str | None,
        *,
        path_secret: str | None = None,
        tolerance_seconds: int = 900,
        max_entries: int = 10_000,
        now_ms: Callable[[], int] | None = None,
    ) -> None:
        self.secret = secret or None
        self.path_secret = path_secret or None
        self.tolerance_ms = tolerance_seconds * 1000
        self._now_ms = now_ms or (lambda: int(time.time() * 1000))
        clock = lambda: self._now_ms() / 1000  # noqa: E731
        self.recent_request_ids = TtlCache(tolerance_seconds, max_entries, clock)
        self.recent_audits = TtlCache(tolerance_seconds, max_entries, clock)

    def path_secret_ok(self, provided: str | None) -> bool:
        if self.path_secret is None:
            return True
        if not provided:
            return False
        return hmac.compare_digest(provided.encode("utf-8"), self.path_secret.encode("utf-8"))

    def verify(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        path_secret: str | None = None,
    ) -> VerificationVerdict:
        """Produce a verdict; unexpected errors become a verdict too."""

        lowered = _lower_headers(headers)
        try:
            verdict = self._verify(raw_body, lowered)
        except Exception as exc:
            logger.exception("webhook_verifier_error provider=%s error=%s", self.provider, exc)
            verdict = VerificationVerdict(
                provider=self.provider,
                reason="verifier_exception",
                correlation_id=lowered.get(self.correlation_header),
            )
        verdict.path_secret_ok = self.path_secret_ok(path_secret)
        if verdict.reason == "ok" and not verdict.path_secret_ok:
            verdict.reason = "path_secret_mismatch"
        return verdict

    def should_audit(self, verdict: VerificationVerdict) -> bool:
        """Non-accepted verdicts are audited once per (correlation id, reason) window."""

        if verdict.accepted and verdict.path_secret_ok:
            return False
        key = f"{verdict.correlation_id or '-'}|{verdict.reason}"
        return not self.recent_audits.check_and_add(key)

    def _track_replay(self, correlation_id: str | None, signature_ok: bool) -> bool:
        if not correlation_id:
            return False
        if signature_ok:
            return self.recent_request_ids.check_and_add(correlation_id)
        return correlation_id in self.recent_request_ids

    def _verify(self, raw_body: bytes, headers: dict[str, str]) -> VerificationVerdict:
        raise NotImplementedError


class ManifestSignatureVerifier(WebhookVerifier):
    """HMAC-SHA256 over `id:{id};request-id:{x-request-id};ts:{ts};`."""

    provider = "mercadopago"
    signature_header = "x-signature"

    def _verify(self, raw_body: bytes, headers: dict[str, str]) -> VerificationVerdict:
        correlation_id = headers.get(self.correlation_header) or None
        verdict = VerificationVerdict(provider=self.provider, correlation_id=correlation_id)
        if self.secret is None:
            verdict.reason = "missing_secret"
            return verdict

        fields = parse_signature_header(headers.get(self.signature_header))
        resource_id = extract_resource_id(_parse_json(raw_body))
        verdict.resource_id = resource_id
        if fields is None or correlation_id is None or resource_id is None:
            verdict.reason = "bad_signature_format"
            return verdict

        ts_raw = fields["ts"]
        try:
            ts_ms = to_milliseconds(int(ts_raw))
        except ValueError:
            verdict.reason = "invalid_timestamp"
            return verdict
        verdict.ts_ms = ts_ms

        manifest = build_manifest(resource_id, correlation_id, ts_raw)
        verdict.signature_ok = signature_matches(manifest, self.secret, fields["v1"])
        verdict.fresh = abs(self._now_ms() - ts_ms) <= self.tolerance_ms
        verdict.duplicate = self._track_replay(correlation_id, verdict.signature_ok)

        if not verdict.signature_ok:
            verdict.reason = "invalid_signature"
        elif not verdict.fresh:
            verdict.reason = "stale_timestamp"
        elif verdict.duplicate:
            verdict.reason = "duplicate_request_id"
        return verdict


class AuthenticityTokenVerifier(WebhookVerifier):
    """SHA-256 of `{api_token}-{raw_body}` carried in `x-authenticity-token`.

    The scheme has no timestamp, so every verdict is considered fresh.
    """

    provider = "pagbank"
    signature_header = "x-authenticity-token"

    def _verify(self, raw_body: bytes, headers: dict[str, str]) -> VerificationVerdict:
        correlation_id = headers.get(self.correlation_header) or (
            "body:" + hashlib.sha256(raw_body).hexdigest()
        )
        verdict = VerificationVerdict(provider=self.provider, correlation_id=correlation_id, fresh=True)
        if self.secret is None:
            verdict.reason = "missing_secret"
            return verdict

        received = (headers.get(self.signature_header) or "").strip().lower()
        if not received:
            verdict.reason = "bad_signature_format"
            return verdict

        expected = hashlib.sha256(self.secret.encode("utf-8") + b"-" + raw_body).hexdigest()
        verdict.signature_ok = hmac.compare_digest(expected.encode("ascii"), received.encode("utf-8"))
        verdict.duplicate = self._track_replay(correlation_id, verdict.signature_ok)
        if not verdict.signature_ok:
            verdict.reason = "invalid_signature"
        elif verdict.duplicate:
            verdict.reason = "duplicate_request_id"
        return verdict


def parse_transmission_time(value: str | None) -> int | None:
    """ISO-8601 `paypal-transmission-time` as epoch milliseconds."""

    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return None
    return int(parsed.timestamp() * 1000)


class PayPalTransmissionVerifier(WebhookVerifier):
    """`paypal-transmission-*` headers, cross-checked through PayPal's API.

    `secret` is the webhook id the subscription was registered under. The
    signature itself is certificate based, so it is only confirmed when a
    `signature_checker` (the REST client's verify call) is available; without
    one the verdict records `signature_unchecked` and trust has to come from an
    authoritative capture fetch.
    """

    provider = "paypal"
    correlation_header = "paypal-transmission-id"
    required_headers = (
        "paypal-transmission-id",
        "paypal-transmission-time",
        "paypal-transmission-sig",
        "paypal-cert-url",
        "paypal-auth-algo",
    )

    def __init__(
        self,
        secret: str | None,
        *,
        signature_checker: Callable[[dict[str, str], dict], bool | None] | None = None,
        **options,
    ) -> None:
        super().__init__(secret, **options)
        self.signature_checker = signature_checker

    def _verify(self, raw_body: bytes, headers: dict[str, str]) -> VerificationVerdict:
        correlation_id = headers.get(self.correlation_header) or None
        verdict = VerificationVerdict(provider=self.provider, correlation_id=correlation_id)
        if self.secret is None:
            verdict.reason = "missing_secret"
            return verdict

        event = _parse_json(raw_body)
        if any(not headers.get(name) for name in self.required_headers) or not isinstance(event, dict):
            verdict.reason = "bad_signature_format"
            return verdict
        resource = event.get("resource")
        if isinstance(resource, dict) and resource.get("id") is not None:
            verdict.resource_id = str(resource["id"])

        ts_ms = parse_transmission_time(headers.get("paypal-transmission-time"))
        if ts_ms is None:
            verdict.reason = "invalid_timestamp"
            return verdict
        verdict.ts_ms = ts_ms
        verdict.fresh = abs(self._now_ms() - ts_ms) <= self.tolerance_ms

        if self.signature_checker is None:
            verdict.reason = "signature_unchecked"
            return verdict
        confirmed = self.signature_checker(headers, event)
        if confirmed is None:
            verdict.reason = "verification_unavailable"
            return verdict

        verdict.signature_ok = confirmed
        verdict.duplicate = self._track_replay(correlation_id, verdict.signature_ok)
        if not verdict.signature_ok:
            verdict.reason = "invalid_signature"
        elif not verdict.fresh:
            verdict.reason = "stale_timestamp"
        elif verdict.duplicate:
            verdict.reason = "duplicate_request_id"
        return verdict
