"""Fingerprint determinism and integrity re-derivation."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from pogpp.common.fingerprint import (
    build_visit_payload,
    canonical_document,
    compute_fingerprint,
    normalize_coordinate,
    normalize_timestamp,
    verify_integrity,
)

T0 = datetime(2024, 5, 24, 10, 0, 0, tzinfo=timezone.utc)


def test_coordinates_use_eight_decimals_half_up():
    assert normalize_coordinate(45.4642) == "45.46420000"
    assert normalize_coordinate(9.19) == "9.19000000"
    assert normalize_coordinate(1.000000005) == "1.00000001"
    assert normalize_coordinate(-0.0) == "0.00000000"
    assert normalize_coordinate(-0.000000001) == "0.00000000"
    assert normalize_coordinate("12.5") == "12.50000000"


def test_coordinate_rejects_non_numbers():
    with pytest.raises(ValueError):
        normalize_coordinate(True)
    with pytest.raises(ValueError):
        normalize_coordinate("abc")
    with pytest.raises(ValueError):
        normalize_coordinate(float("nan"))


def test_timestamp_is_utc_millisecond_z():
    assert normalize_timestamp(T0) == "2024-05-24T10:00:00.000Z"
    assert normalize_timestamp("2024-05-24T12:00:00.123456+02:00") == "2024-05-24T10:00:00.123Z"
    assert normalize_timestamp("2024-05-24T10:00:00Z") == "2024-05-24T10:00:00.000Z"
    # Naive values are taken as UTC.
    assert normalize_timestamp(datetime(2024, 5, 24, 10, 0, 0)) == "2024-05-24T10:00:00.000Z"


def test_canonical_document_shape():
    document = canonical_document("u1", "TAG-42", 45.4642, 9.19, T0)
    assert document == (
        '{"latitude":"45.46420000","longitude":"9.19000000","nfc_tag_id":"TAG-42",'
        '"timestamp":"2024-05-24T10:00:00.000Z","user_id":"u1"}'
    )


def test_fingerprint_is_deterministic_hex():
    first = compute_fingerprint("u1", "TAG-42", 45.4642, 9.19, T0)
    second = compute_fingerprint("u1", "TAG-42", 45.4642, 9.19, "2024-05-24T10:00:00Z")
    assert first == second
    assert len(first) == 64
    int(first, 16)


def test_sub_precision_noise_does_not_change_fingerprint():
    """Differences past the eighth decimal or the millisecond are normalised away."""

    base = compute_fingerprint("u1", "TAG-42", 45.4642, 9.19, T0)
    assert compute_fingerprint("u1", "TAG-42", 45.464200001, 9.19, T0) == base
    assert compute_fingerprint("u1", "TAG-42", 45.4642, 9.19, T0 + timedelta(microseconds=400)) == base


def test_any_identifying_field_changes_fingerprint():
    base = compute_fingerprint("u1", "TAG-42", 45.4642, 9.19, T0)
    assert compute_fingerprint("u2", "TAG-42", 45.4642, 9.19, T0) != base
    assert compute_fingerprint("u1", "TAG-43", 45.4642, 9.19, T0) != base
    assert compute_fingerprint("u1", "TAG-42", 45.46421, 9.19, T0) != base
    assert compute_fingerprint("u1", "TAG-42", 45.4642, 9.19, T0 + timedelta(milliseconds=1)) != base


def test_stored_payload_verifies():
    fingerprint = compute_fingerprint("u1", "TAG-42", 45.4642, 9.19, T0)
    payload = build_visit_payload("u1", "TAG-42", 45.4642, 9.19, T0, location_name="Duomo")
    assert verify_integrity(payload, fingerprint)
    assert verify_integrity(payload.decode("utf-8"), fingerprint)
    assert verify_integrity(json.loads(payload), fingerprint)


def test_payload_bytes_are_stable():
    one = build_visit_payload("u1", "TAG-42", 45.4642, 9.19, T0, description="hi")
    two = build_visit_payload("u1", "TAG-42", 45.4642, 9.19, "2024-05-24T10:00:00Z", description="hi")
    assert one == two
    assert json.loads(one)["version"] == "1.0"


def test_tampered_or_broken_payload_fails():
    fingerprint = compute_fingerprint("u1", "TAG-42", 45.4642, 9.19, T0)
    tampered = json.loads(build_visit_payload("u1", "TAG-42", 45.4642, 9.19, T0))
    tampered["latitude"] = "45.46430000"
    assert not verify_integrity(tampered, fingerprint)
    assert not verify_integrity(b"not json", fingerprint)
    assert not verify_integrity(b"[1, 2]", fingerprint)
    assert not verify_integrity({"user_id": "u1"}, fingerprint)
    assert not verify_integrity(b"\xff\xfe", fingerprint)
    assert not verify_integrity(build_visit_payload("u1", "TAG-42", 45.4642, 9.19, T0), "")
