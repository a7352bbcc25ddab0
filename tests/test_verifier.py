"""Webhook signature verification verdicts."""

import hashlib
import json
import string
from datetime import datetime, timedelta, timezone

from hypothesis import given, settings
from hypothesis import strategies as st

from payhook.services.ingestion.verifier import (
    AuthenticityTokenVerifier,
    ManifestSignatureVerifier,
    PayPalTransmissionVerifier,
    TtlCache,
    build_manifest,
    extract_resource_id,
    parse_signature_header,
    parse_transmission_time,
    sign_manifest,
    signature_matches,
)


SECRET = "mp-test-secret"
NOW_MS = 1_760_000_000_000
BODY = {"type": "payment", "data": {"id": "123456"}}


def raw(body) -> bytes:
    return json.dumps(body).encode("utf-8")


def signed_headers(body=BODY, *, request_id="req-1", ts=None, secret=SECRET) -> dict:
    ts = ts if ts is not None else NOW_MS // 1000
    manifest = build_manifest(extract_resource_id(body), request_id, str(ts))
    return {"x-signature": f"ts={ts},v1={sign_manifest(manifest, secret)}", "x-request-id": request_id}


def make_verifier(**kwargs) -> ManifestSignatureVerifier:
    kwargs.setdefault("now_ms", lambda: NOW_MS)
    return ManifestSignatureVerifier(kwargs.pop("secret", SECRET), **kwargs)


ids = st.text(alphabet=string.ascii_letters + string.digits + "-_", min_size=1, max_size=40)


@given(resource_id=ids, request_id=ids, ts=st.integers(min_value=0, max_value=10**13), secret=st.text(min_size=1))
@settings(max_examples=100)
def test_signature_roundtrip_and_single_byte_mutation(resource_id, request_id, ts, secret):
    manifest = build_manifest(resource_id, request_id, str(ts))
    signature = sign_manifest(manifest, secret)
    assert signature_matches(manifest, secret, signature)

    flipped = "0" if signature[0] != "0" else "1"
    assert not signature_matches(manifest, secret, flipped + signature[1:])
    assert not signature_matches(manifest + "x", secret, signature)


def test_valid_signature_is_accepted():
    verdict = make_verifier().verify(raw(BODY), signed_headers())

    assert verdict.signature_ok and verdict.fresh and not verdict.duplicate
    assert verdict.accepted
    assert verdict.reason == "ok"
    assert verdict.resource_id == "123456"


def test_header_names_are_case_insensitive_and_semicolons_parse():
    headers = signed_headers()
    ts, v1 = headers["x-signature"].split(",")
    verdict = make_verifier().verify(
        raw(BODY), {"X-Signature": f"{ts}; {v1}", "X-Request-Id": headers["x-request-id"]}
    )
    assert verdict.accepted


def test_tampered_body_fails_signature():
    headers = signed_headers()
    verdict = make_verifier().verify(raw({"type": "payment", "data": {"id": "999"}}), headers)

    assert not verdict.signature_ok
    assert verdict.reason == "invalid_signature"


def test_freshness_boundary_is_inclusive():
    at_limit = NOW_MS - 900_000
    verdict = make_verifier().verify(raw(BODY), signed_headers(ts=at_limit))
    assert verdict.fresh and verdict.reason == "ok"

    past_limit = NOW_MS - 900_001
    verdict = make_verifier().verify(raw(BODY), signed_headers(ts=past_limit, request_id="req-2"))
    assert verdict.signature_ok
    assert not verdict.fresh
    assert verdict.reason == "stale_timestamp"


def test_timestamp_in_seconds_and_milliseconds():
    seconds = make_verifier().verify(raw(BODY), signed_headers(ts=NOW_MS // 1000))
    millis = make_verifier().verify(raw(BODY), signed_headers(ts=NOW_MS))
    assert seconds.ts_ms == NOW_MS
    assert millis.ts_ms == NOW_MS


def test_replayed_request_id_is_flagged():
    verifier = make_verifier()
    first = verifier.verify(raw(BODY), signed_headers())
    second = verifier.verify(raw(BODY), signed_headers())

    assert not first.duplicate
    assert second.duplicate
    assert second.signature_ok
    assert second.reason == "duplicate_request_id"


def test_forged_requests_do_not_poison_replay_cache():
    verifier = make_verifier()
    forged = verifier.verify(raw(BODY), signed_headers(secret="wrong"))
    genuine = verifier.verify(raw(BODY), signed_headers())

    assert forged.reason == "invalid_signature"
    assert genuine.accepted


def test_missing_secret_and_malformed_headers_never_raise():
    assert make_verifier(secret=None).verify(raw(BODY), signed_headers()).reason == "missing_secret"

    verifier = make_verifier()
    assert verifier.verify(raw(BODY), {"x-request-id": "r"}).reason == "bad_signature_format"
    assert verifier.verify(b"not json", signed_headers()).reason == "bad_signature_format"
    assert (
        verifier.verify(raw(BODY), {"x-signature": "ts=abc,v1=00", "x-request-id": "r"}).reason
        == "invalid_timestamp"
    )
    assert verifier.verify(raw(BODY), {"x-signature": "ts=1,v1=zz", "x-request-id": "r"}).reason in {
        "invalid_signature",
        "stale_timestamp",
    }


def test_path_secret_mismatch_is_reported_after_signature():
    verifier = make_verifier(path_secret="s3cret")

    assert verifier.verify(raw(BODY), signed_headers(), "s3cret").reason == "ok"
    mismatch = verifier.verify(raw(BODY), signed_headers(request_id="req-9"), "guess")
    assert not mismatch.path_secret_ok
    assert mismatch.reason == "path_secret_mismatch"


def test_audit_is_rate_limited_per_correlation_and_reason():
    verifier = make_verifier()
    verdict = verifier.verify(raw(BODY), signed_headers(secret="wrong"))

    assert verifier.should_audit(verdict)
    assert not verifier.should_audit(verdict)
    accepted = make_verifier().verify(raw(BODY), signed_headers())
    assert not verifier.should_audit(accepted)


def test_parse_signature_header_requires_ts_and_v1():
    assert parse_signature_header("ts=1,v1=ab") == {"ts": "1", "v1": "ab"}
    assert parse_signature_header("ts=1;v1=ab;extra=x") == {"ts": "1", "v1": "ab", "extra": "x"}
    assert parse_signature_header("v1=ab") is None
    assert parse_signature_header("") is None


def test_extract_resource_id_precedence():
    assert extract_resource_id({"data": {"id": 42}, "id": 7}) == "42"
    assert extract_resource_id({"id": 7}) == "7"
    assert extract_resource_id({"resource": "https://api.example.com/v1/payments/9876?x=1"}) == "9876"
    assert extract_resource_id({"resource": "5555"}) == "5555"
    assert extract_resource_id({"resource": "not-a-path"}) is None
    assert extract_resource_id(["x"]) is None


def test_ttl_cache_expires_and_bounds_entries():
    now = [0.0]
    cache = TtlCache(ttl_seconds=10, max_entries=2, clock=lambda: now[0])

    assert not cache.check_and_add("a")
    assert cache.check_and_add("a")
    now[0] = 11
    assert "a" not in cache

    cache.check_and_add("b")
    cache.check_and_add("c")
    cache.check_and_add("d")
    assert len(cache) == 2
    assert "b" not in cache


def test_authenticity_token_verifier():
    token = "pagbank-token"
    body = raw({"id": "CHAR_1", "charges": [{"id": "CHAR_1", "status": "PAID"}]})
    digest = hashlib.sha256(f"{token}-".encode() + body).hexdigest()
    verifier = AuthenticityTokenVerifier(token)

    verdict = verifier.verify(body, {"x-authenticity-token": digest, "x-request-id": "pb-1"})
    assert verdict.accepted
    assert verdict.fresh

    forged = verifier.verify(body, {"x-authenticity-token": "0" * 64, "x-request-id": "pb-2"})
    assert forged.reason == "invalid_signature"
    assert forged.fresh

    assert verifier.verify(body, {}).reason == "bad_signature_format"


PAYPAL_EVENT = {"id": "WH-1", "event_type": "PAYMENT.CAPTURE.COMPLETED", "resource": {"id": "CAP-1"}}


def paypal_headers(transmission_id="tx-1", *, at=None) -> dict:
    at = at or datetime.fromtimestamp(NOW_MS / 1000, tz=timezone.utc)
    return {
        "paypal-transmission-id": transmission_id,
        "paypal-transmission-time": at.isoformat().replace("+00:00", "Z"),
        "paypal-transmission-sig": "c2lnbmF0dXJl",
        "paypal-cert-url": "https://api.paypal.com/v1/notifications/certs/CERT-1",
        "paypal-auth-algo": "SHA256withRSA",
    }


def test_paypal_verifier_defers_to_signature_checker():
    seen = []

    def checker(headers, event):
        seen.append((headers["paypal-transmission-id"], event["id"]))
        return headers["paypal-transmission-id"] != "tx-forged"

    verifier = PayPalTransmissionVerifier("WH-ID", signature_checker=checker, now_ms=lambda: NOW_MS)

    verdict = verifier.verify(raw(PAYPAL_EVENT), paypal_headers())
    assert verdict.accepted
    assert verdict.correlation_id == "tx-1"
    assert verdict.resource_id == "CAP-1"
    assert seen == [("tx-1", "WH-1")]

    assert verifier.verify(raw(PAYPAL_EVENT), paypal_headers()).reason == "duplicate_request_id"
    assert verifier.verify(raw(PAYPAL_EVENT), paypal_headers("tx-forged")).reason == "invalid_signature"

    stale = verifier.verify(
        raw(PAYPAL_EVENT),
        paypal_headers("tx-2", at=datetime.fromtimestamp(NOW_MS / 1000, tz=timezone.utc) - timedelta(hours=1)),
    )
    assert stale.signature_ok
    assert stale.reason == "stale_timestamp"


def test_paypal_verifier_without_confirmation_is_not_trusted():
    unchecked = PayPalTransmissionVerifier("WH-ID", now_ms=lambda: NOW_MS)
    unavailable = PayPalTransmissionVerifier("WH-ID", signature_checker=lambda h, e: None, now_ms=lambda: NOW_MS)

    verdict = unchecked.verify(raw(PAYPAL_EVENT), paypal_headers())
    assert not verdict.signature_ok
    assert verdict.fresh
    assert verdict.reason == "signature_unchecked"
    assert unavailable.verify(raw(PAYPAL_EVENT), paypal_headers()).reason == "verification_unavailable"

    missing = paypal_headers()
    del missing["paypal-transmission-sig"]
    assert unchecked.verify(raw(PAYPAL_EVENT), missing).reason == "bad_signature_format"
    assert unchecked.verify(b"not json", paypal_headers()).reason == "bad_signature_format"
    assert PayPalTransmissionVerifier(None).verify(raw(PAYPAL_EVENT), paypal_headers()).reason == "missing_secret"

    naive = paypal_headers()
    naive["paypal-transmission-time"] = "2026-10-01T12:00:00"
    assert unchecked.verify(raw(PAYPAL_EVENT), naive).reason == "invalid_timestamp"


def test_parse_transmission_time():
    assert parse_transmission_time("1970-01-01T00:00:01Z") == 1000
    assert parse_transmission_time("2026-10-01T12:00:00") is None
    assert parse_transmission_time("yesterday") is None
    assert parse_transmission_time(None) is None
