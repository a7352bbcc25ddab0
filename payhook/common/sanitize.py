"""Redaction and PII masking applied before anything provider-supplied is stored.

Secret-bearing header names and JSON keys are replaced wholesale. A short list
of PII keys is masked in a format-preserving way so stored payloads remain
useful for debugging.
"""

import re
from typing import Any, Mapping

REDACTED = "[REDACTED]"
MAX_DEPTH = 8

SENSITIVE_HEADERS = frozenset(
    {
        "authorization",
        "proxy-authorization",
        "cookie",
        "set-cookie",
        "x-api-key",
        "x-access-token",
        "x-client-secret",
        "x-signature",
        "x-authenticity-token",
        "x-webhook-secret",
    }
)

SENSITIVE_JSON_KEYS = frozenset(
    {
        "authorization",
        "access_token",
        "refresh_token",
        "id_token",
        "token",
        "secret",
        "client_secret",
        "api_key",
        "apikey",
        "password",
        "pwd",
        "signature",
        "hmac",
        "security_code",
        "cvv",
        "cvc",
        "card_number",
        "pan",
        "card",
        "encrypted",
    }
)

EMAIL_KEYS = frozenset({"email", "e-mail", "mail", "email_address"})
PHONE_KEYS = frozenset({"phone", "phone_number", "mobile", "whatsapp", "national_number"})
TAX_ID_KEYS = frozenset({"tax_id", "document", "cpf", "cnpj"})

_NON_DIGITS = re.compile(r"\D+")


def _mask_middle(part: str) -> str:
    if len(part) <= 2:
        return "*" * len(part)
    return part[0] + "*" * (len(part) - 2) + part[-1]


def mask_email(value: Any) -> str:
    """`john.doe@example.com` -> `j******e@e*****e.com`."""

    text = str(value or "")
    user, sep, domain = text.partition("@")
    if not sep or not domain:
        return "[REDACTED_EMAIL]"
    host, dot, rest = domain.partition(".")
    return f"{_mask_middle(user)}@{_mask_middle(host)}{dot}{rest}"


def mask_digits(value: Any, visible: int = 2) -> str:
    digits = _NON_DIGITS.sub("", str(value or ""))
    if not digits:
        return "[REDACTED_DIGITS]"
    keep = min(visible, len(digits))
    return "*" * (len(digits) - keep) + digits[len(digits) - keep :]


def mask_phone(value: Any) -> str:
    return mask_digits(value, 4)


def mask_tax_id(value: Any) -> str:
    return mask_digits(value, 3)


def _mask_value_by_key(key: str, value: Any) -> Any:
    lowered = key.lower()
    if lowered in SENSITIVE_JSON_KEYS:
        return REDACTED
    # Nested containers under a PII key (e.g. `phone: {area_code, number}`) are
    # walked instead of collapsed.
    if isinstance(value, (dict, list)):
        return value
    if value is None:
        return None
    if lowered in EMAIL_KEYS:
        return mask_email(value)
    if lowered in PHONE_KEYS:
        return mask_phone(value)
    if lowered in TAX_ID_KEYS:
        return mask_tax_id(value)
    return value


def sanitize_json(value: Any, depth: int = 0) -> Any:
    """Recursively redact secrets and mask PII in decoded JSON."""

    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if depth > MAX_DEPTH:
        return "[TRUNCATED_DEPTH]"
    if isinstance(value, list):
        return [sanitize_json(item, depth + 1) for item in value]
    if isinstance(value, dict):
        out = {}
        for key, item in value.items():
            masked = _mask_value_by_key(str(key), item)
            out[str(key)] = sanitize_json(masked, depth + 1) if isinstance(masked, (dict, list)) else masked
        return out
    return str(value)


def sanitize_headers(headers: Mapping[str, str] | None) -> dict[str, str] | None:
    """Lower-case header names and replace deny-listed values."""

    if headers is None:
        return None
    out = {}
    for name, value in headers.items():
        key = str(name).lower()
        out[key] = REDACTED if key in SENSITIVE_HEADERS else str(value)
    return out


def sanitize_query(query: Mapping[str, Any] | None) -> dict | None:
    if query is None:
        return None
    return sanitize_json(dict(query))
