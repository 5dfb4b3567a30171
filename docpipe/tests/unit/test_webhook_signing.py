from __future__ import annotations

from datetime import datetime, timedelta, timezone
import hashlib
import hmac

import pytest

from docpipe.core.errors import IntegrityError
from docpipe.services.webhooks.signing import (
    HEADER_EVENT,
    HEADER_SIGNATURE,
    HEADER_TIMESTAMP,
    build_signature_headers,
    extract_signature_components,
    format_timestamp,
    require_valid_signature,
    serialize_payload,
    sign,
    validate_signature,
    verify_signature,
)


SECRET = "a" * 64
NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
PAYLOAD = {"event": "enhancement.progress", "data": {"run_id": "r1", "progress": 25}}


def _signed(payload=PAYLOAD, secret=SECRET, at=NOW) -> tuple[str, str, str]:
    body = serialize_payload(payload)
    timestamp = format_timestamp(at)
    return body, sign(body, secret, timestamp), timestamp


def test_round_trip_validates() -> None:
    body, signature, timestamp = _signed()
    assert validate_signature(body, signature, SECRET, timestamp, now=NOW)
    # Mapping payloads are canonicalized the same way as the sent body.
    assert validate_signature(PAYLOAD, signature, SECRET, timestamp, now=NOW)


def test_signature_is_hmac_over_timestamp_and_body() -> None:
    body, signature, timestamp = _signed()
    expected = hmac.new(SECRET.encode(), f"{timestamp}.{body}".encode(), hashlib.sha256).hexdigest()
    assert signature == expected


def test_mutating_payload_signature_or_secret_fails() -> None:
    body, signature, timestamp = _signed()

    tampered_body = body.replace('"progress":25', '"progress":26')
    assert not validate_signature(tampered_body, signature, SECRET, timestamp, now=NOW)

    flipped = ("0" if signature[0] != "0" else "1") + signature[1:]
    assert not validate_signature(body, flipped, SECRET, timestamp, now=NOW)

    assert not validate_signature(body, signature, SECRET[:-1] + "b", timestamp, now=NOW)


def test_stale_timestamp_fails_even_with_correct_signature() -> None:
    old = NOW - timedelta(minutes=6)
    body, signature, timestamp = _signed(at=old)

    result = verify_signature(body, signature, SECRET, timestamp, now=NOW)

    assert not result.ok
    assert result.reason == "timestamp_skew"
    assert validate_signature(body, signature, SECRET, timestamp, max_age_ms=10 * 60_000, now=NOW)


def test_future_timestamps_are_also_rejected() -> None:
    body, signature, timestamp = _signed(at=NOW + timedelta(minutes=6))
    assert verify_signature(body, signature, SECRET, timestamp, now=NOW).reason == "timestamp_skew"


def test_length_mismatch_is_reported_before_comparison() -> None:
    body, signature, timestamp = _signed()
    result = verify_signature(body, signature[:-2], SECRET, timestamp, now=NOW)
    assert result.reason == "length_mismatch"


def test_missing_and_malformed_inputs() -> None:
    body, signature, timestamp = _signed()
    assert verify_signature(body, None, SECRET, timestamp, now=NOW).reason == "missing_signature"
    assert verify_signature(body, signature, SECRET, None, now=NOW).reason == "missing_timestamp"
    assert verify_signature(body, signature, SECRET, "yesterday", now=NOW).reason == "invalid_timestamp"


def test_epoch_millisecond_timestamps_are_accepted() -> None:
    body = serialize_payload(PAYLOAD)
    timestamp = str(int(NOW.timestamp() * 1000))
    signature = sign(body, SECRET, timestamp)
    assert validate_signature(body, signature, SECRET, timestamp, now=NOW)


def test_header_round_trip_and_receive_guard() -> None:
    body = serialize_payload(PAYLOAD)
    headers = build_signature_headers(
        body=body,
        secret=SECRET,
        event_type="enhancement.progress",
        timestamp=format_timestamp(NOW),
    )
    assert headers[HEADER_SIGNATURE].startswith("sha256=")

    lowered = {key.lower(): value for key, value in headers.items()}
    components = extract_signature_components(lowered)
    assert components.event == "enhancement.progress"
    assert components.timestamp == headers[HEADER_TIMESTAMP]
    assert require_valid_signature(body, lowered, SECRET, now=NOW).signature == headers[HEADER_SIGNATURE]

    with pytest.raises(IntegrityError) as excinfo:
        require_valid_signature(body, {**headers, HEADER_EVENT: "x", HEADER_SIGNATURE: "sha256=00"}, SECRET, now=NOW)
    assert excinfo.value.reason == "length_mismatch"
