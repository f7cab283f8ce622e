"""Canonical visit fingerprints.

The fingerprint is the SHA-256 of a compact, key-sorted JSON document built
from string-normalised fields, so any runtime that follows the same rules
re-derives byte-identical output:

* coordinates: decimal strings with exactly eight places, half-up, no "-0";
* timestamp: UTC ISO-8601 with millisecond precision and a ``Z`` suffix;
* keys: ``latitude``, ``longitude``, ``nfc_tag_id``, ``timestamp``,
  ``user_id``, sorted; separators ``,`` and ``:``; UTF-8.
"""

import hashlib
import hmac
import json
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Mapping

EIGHT_PLACES = Decimal("0.00000001")


def normalize_coordinate(value) -> str:
    """Render a coordinate as a fixed eight-decimal string."""

    if isinstance(value, bool):
        raise ValueError("coordinate must be numeric")
    try:
        # repr() gives the shortest string that round-trips the float.
        number = Decimal(repr(value)) if isinstance(value, float) else Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"coordinate is not numeric: {value!r}") from exc
    if not number.is_finite():
        raise ValueError(f"coordinate is not finite: {value!r}")
    quantized = number.quantize(EIGHT_PLACES, rounding=ROUND_HALF_UP)
    if quantized.is_zero():
        quantized = abs(quantized)
    return f"{quantized:.8f}"


def parse_timestamp(value) -> datetime:
    """Accept an aware/naive datetime or an ISO-8601 string; return aware UTC."""

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    else:
        raise ValueError(f"unsupported timestamp type: {type(value).__name__}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def normalize_timestamp(value) -> str:
    """UTC ISO-8601 string with millisecond precision, e.g. 2024-05-24T10:00:00.000Z."""

    ts = parse_timestamp(value)
    return ts.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ts.microsecond // 1000:03d}Z"


def canonical_document(user_id, nfc_tag_id: str, latitude, longitude, timestamp) -> str:
    """The exact string that gets hashed."""

    fields = {
        "user_id": str(user_id),
        "nfc_tag_id": str(nfc_tag_id),
        "latitude": normalize_coordinate(latitude),
        "longitude": normalize_coordinate(longitude),
        "timestamp": normalize_timestamp(timestamp),
    }
    return json.dumps(fields, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_fingerprint(user_id, nfc_tag_id: str, latitude, longitude, timestamp) -> str:
    """64-char hex SHA-256 fingerprint of a visit's identifying fields."""

    document = canonical_document(user_id, nfc_tag_id, latitude, longitude, timestamp)
    return hashlib.sha256(document.encode("utf-8")).hexdigest()


def fingerprint_payload(payload: Mapping[str, Any]) -> str:
    """Fingerprint of a stored raw visit payload (see `build_visit_payload`)."""

    return compute_fingerprint(
        payload["user_id"],
        payload["nfc_tag_id"],
        payload["latitude"],
        payload["longitude"],
        payload["timestamp"],
    )


def verify_integrity(stored_payload, expected_fingerprint: str) -> bool:
    """Recompute the fingerprint from a stored payload and compare.

    `stored_payload` may be a mapping or the raw JSON bytes/str fetched from
    the content store. Anything unparseable or incomplete fails the check.
    """

    if not isinstance(expected_fingerprint, str) or not expected_fingerprint:
        return False
    try:
        payload = stored_payload
        if isinstance(payload, (bytes, bytearray)):
            payload = payload.decode("utf-8")
        if isinstance(payload, str):
            payload = json.loads(payload)
        if not isinstance(payload, Mapping):
            return False
        actual = fingerprint_payload(payload)
    except (KeyError, ValueError, TypeError, UnicodeDecodeError):
        return False
    return hmac.compare_digest(actual, expected_fingerprint)


def build_visit_payload(
    user_id,
    nfc_tag_id: str,
    latitude,
    longitude,
    timestamp,
    location_name: str | None = None,
    description: str | None = None,
    accuracy_meters: float | None = None,
) -> bytes:
    """Serialize the raw visit payload stored off-box.

    Same logical visit always yields the same bytes, so the content store
    returns the same reference for it.
    """

    payload = {
        "version": "1.0",
        "user_id": str(user_id),
        "nfc_tag_id": nfc_tag_id,
        "latitude": normalize_coordinate(latitude),
        "longitude": normalize_coordinate(longitude),
        "timestamp": normalize_timestamp(timestamp),
        "location_name": location_name,
        "description": description,
        "accuracy_meters": accuracy_meters,
    }
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
