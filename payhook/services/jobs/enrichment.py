"""Strict coercion of intake fields into the enrichment API payload.

Intake data is stored as text; anything that does not parse exactly is a
`MalformedInputError` so the job fails once instead of retrying a request the
API can never accept.
"""

import re
from datetime import date
from decimal import Decimal
from typing import Any

from payhook.common.errors import MalformedInputError


DATE_PATTERN = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")
MIN_YEAR, MAX_YEAR = 1800, 2100
MIN_OFFSET_MINUTES, MAX_OFFSET_MINUTES = -720, 840

ENRICHMENT_CONFIG = {"observation_point": "topocentric", "ayanamsha": "tropical", "language": "pt"}


def coerce_date(raw: Any) -> tuple[int, int, int]:
    match = DATE_PATTERN.match(str(raw).strip()) if isinstance(raw, str) else None
    if match is None:
        raise MalformedInputError("birth_date", raw, "expected YYYY-MM-DD")
    year, month, day = (int(part) for part in match.groups())
    if not MIN_YEAR <= year <= MAX_YEAR:
        raise MalformedInputError("birth_date", raw, f"year outside {MIN_YEAR}-{MAX_YEAR}")
    try:
        date(year, month, day)
    except ValueError:
        raise MalformedInputError("birth_date", raw, "not a calendar date") from None
    return year, month, day


def coerce_time(raw: Any) -> tuple[int, int, int]:
    match = TIME_PATTERN.match(raw.strip()) if isinstance(raw, str) else None
    if match is None:
        raise MalformedInputError("birth_time", raw, "expected HH:MM[:SS]")
    hours, minutes = int(match.group(1)), int(match.group(2))
    seconds = int(match.group(3) or 0)
    if not (0 <= hours <= 23 and 0 <= minutes <= 59 and 0 <= seconds <= 59):
        raise MalformedInputError("birth_time", raw, "hour, minute or second out of range")
    return hours, minutes, seconds


def coerce_coordinate(field: str, raw: Any, limit: float) -> float:
    if raw is None or isinstance(raw, bool):
        raise MalformedInputError(field, raw, "missing coordinate")
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise MalformedInputError(field, raw, "not a number") from None
    if not -limit <= value <= limit:
        raise MalformedInputError(field, raw, f"outside +/-{limit:g}")
    return value


def coerce_offset(raw: Any) -> int:
    if raw is None or isinstance(raw, bool):
        raise MalformedInputError("birth_utc_offset_min", raw, "timezone offset unresolved")
    try:
        value = int(raw)
    except (TypeError, ValueError, OverflowError):
        raise MalformedInputError("birth_utc_offset_min", raw, "not an integer") from None
    if isinstance(raw, (float, Decimal)) and value != raw:
        raise MalformedInputError("birth_utc_offset_min", raw, "not a whole number of minutes")
    if not MIN_OFFSET_MINUTES <= value <= MAX_OFFSET_MINUTES:
        raise MalformedInputError("birth_utc_offset_min", raw, "offset out of range")
    return value


def build_enrichment_payload(request) -> dict:
    """Payload for the enrichment API from a `ServiceRequest`-like object."""

    year, month, day = coerce_date(request.birth_date)
    hours, minutes, seconds = coerce_time(request.birth_time)
    latitude = coerce_coordinate("birth_place_lat", request.birth_place_lat, 90)
    longitude = coerce_coordinate("birth_place_lng", request.birth_place_lng, 180)
    offset = coerce_offset(request.birth_utc_offset_min)
    return {
        "year": year,
        "month": month,
        "date": day,
        "hours": hours,
        "minutes": minutes,
        "seconds": seconds,
        "latitude": latitude,
        "longitude": longitude,
        "timezone": float(Decimal(offset) / 60),
        "config": dict(ENRICHMENT_CONFIG),
    }


def validate_enrichment_response(body: Any) -> dict:
    if not isinstance(body, dict):
        raise MalformedInputError("enrichment_result", body, "expected a JSON object")
    return body
