from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import hmac
import json
import logging
from typing import Any, Mapping

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docpipe.core.errors import IntegrityError
from docpipe.services.audit import record_event


logger = logging.getLogger(__name__)

HEADER_SIGNATURE = "X-Signature"
HEADER_TIMESTAMP = "X-Signature-Timestamp"
HEADER_EVENT = "X-Event"
HEADER_DELIVERY_ID = "X-Delivery-Id"
HEADER_DELIVERY_ATTEMPT = "X-Delivery-Attempt"

SIGNATURE_PREFIX = "sha256="
DEFAULT_MAX_AGE_MS = 300_000

# Headers the sender owns; subscriber-configured headers may not override them.
RESERVED_HEADERS = frozenset(
    name.lower()
    for name in (
        HEADER_SIGNATURE,
        HEADER_TIMESTAMP,
        HEADER_EVENT,
        HEADER_DELIVERY_ID,
        HEADER_DELIVERY_ATTEMPT,
        "Content-Type",
        "Content-Length",
        "User-Agent",
        "Host",
    )
)


@dataclass(frozen=True)
class SignatureComponents:
    signature: str | None
    timestamp: str | None
    event: str | None


@dataclass(frozen=True)
class VerificationResult:
    ok: bool
    reason: str
    age_ms: int | None = None


def serialize_payload(payload: Mapping[str, Any]) -> str:
    # Canonical JSON so the signed text and the request body are byte-identical.
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def format_timestamp(value: datetime | None = None) -> str:
    moment = (value or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str | int | float | datetime) -> datetime:
    # Accept ISO-8601 strings or epoch milliseconds.
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)
    raw = str(value).strip()
    if raw.isdigit():
        return datetime.fromtimestamp(int(raw) / 1000.0, tz=timezone.utc)
    parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _timestamp_text(value: str | int | float | datetime) -> str:
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, float):
        return str(int(value))
    return str(value)


def _payload_text(payload: str | bytes | Mapping[str, Any]) -> str:
    if isinstance(payload, bytes):
        return payload.decode("utf-8")
    if isinstance(payload, str):
        return payload
    return serialize_payload(payload)


def sign(payload: str | bytes | Mapping[str, Any], secret: str, timestamp: str | int | float | datetime) -> str:
    # HMAC-SHA256 over "{timestamp}.{payload}", hex encoded.
    message = f"{_timestamp_text(timestamp)}.{_payload_text(payload)}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def build_signature_headers(
    *,
    body: str,
    secret: str,
    event_type: str,
    timestamp: str,
) -> dict[str, str]:
    return {
        HEADER_EVENT: event_type,
        HEADER_TIMESTAMP: timestamp,
        HEADER_SIGNATURE: f"{SIGNATURE_PREFIX}{sign(body, secret, timestamp)}",
    }


def extract_signature_components(headers: Mapping[str, str] | Mapping[str, object]) -> SignatureComponents:
    # Header lookup is case-insensitive; missing values come back as None.
    normalized = {str(key).strip().lower(): str(value).strip() for key, value in headers.items()}
    return SignatureComponents(
        signature=normalized.get(HEADER_SIGNATURE.lower()) or None,
        timestamp=normalized.get(HEADER_TIMESTAMP.lower()) or None,
        event=normalized.get(HEADER_EVENT.lower()) or None,
    )


def verify_signature(
    payload: str | bytes | Mapping[str, Any],
    signature: str | None,
    secret: str,
    timestamp: str | int | float | datetime | None,
    *,
    max_age_ms: int = DEFAULT_MAX_AGE_MS,
    now: datetime | None = None,
) -> VerificationResult:
    # Freshness first, then length, then constant-time comparison.
    if not signature:
        return VerificationResult(ok=False, reason="missing_signature")
    if timestamp is None or timestamp == "":
        return VerificationResult(ok=False, reason="missing_timestamp")
    try:
        sent_at = parse_timestamp(timestamp)
    except (ValueError, OverflowError, OSError):
        return VerificationResult(ok=False, reason="invalid_timestamp")
    reference = now or datetime.now(timezone.utc)
    age_ms = int(abs((reference - sent_at).total_seconds()) * 1000)
    if age_ms > max_age_ms:
        return VerificationResult(ok=False, reason="timestamp_skew", age_ms=age_ms)

    provided = signature.strip()
    if provided.startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX):]
    expected = sign(payload, secret, timestamp)
    if len(provided) != len(expected):
        return VerificationResult(ok=False, reason="length_mismatch", age_ms=age_ms)
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        return VerificationResult(ok=False, reason="signature_mismatch", age_ms=age_ms)
    return VerificationResult(ok=True, reason="ok", age_ms=age_ms)


def validate_signature(
    payload: str | bytes | Mapping[str, Any],
    signature: str | None,
    secret: str,
    timestamp: str | int | float | datetime | None,
    max_age_ms: int = DEFAULT_MAX_AGE_MS,
    *,
    now: datetime | None = None,
) -> bool:
    result = verify_signature(payload, signature, secret, timestamp, max_age_ms=max_age_ms, now=now)
    if not result.ok:
        logger.warning("webhook_signature_rejected reason=%s age_ms=%s", result.reason, result.age_ms)
    return result.ok


def require_valid_signature(
    payload: str | bytes | Mapping[str, Any],
    headers: Mapping[str, str] | Mapping[str, object],
    secret: str,
    *,
    max_age_ms: int = DEFAULT_MAX_AGE_MS,
    now: datetime | None = None,
) -> SignatureComponents:
    # Receive-side guard for inbound callbacks; raises instead of returning a flag.
    components = extract_signature_components(headers)
    result = verify_signature(
        payload,
        components.signature,
        secret,
        components.timestamp,
        max_age_ms=max_age_ms,
        now=now,
    )
    if not result.ok:
        logger.warning("webhook_signature_rejected reason=%s age_ms=%s", result.reason, result.age_ms)
        raise IntegrityError(f"webhook signature rejected: {result.reason}", reason=result.reason)
    return components


async def verify_inbound_webhook(
    payload: str | bytes | Mapping[str, Any],
    headers: Mapping[str, str] | Mapping[str, object],
    secret: str,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    owner_id: str | None = None,
    webhook_id: str | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
    max_age_ms: int = DEFAULT_MAX_AGE_MS,
    now: datetime | None = None,
) -> SignatureComponents:
    """Async receive-side guard that also leaves an audit row for every rejection.

    The audit write is best effort; the IntegrityError is re-raised either way.
    """
    try:
        return require_valid_signature(payload, headers, secret, max_age_ms=max_age_ms, now=now)
    except IntegrityError as exc:
        await record_event(
            session_factory=session_factory,
            owner_id=owner_id,
            actor_type="webhook",
            actor_id=webhook_id,
            event_type="security.webhook_signature_rejected",
            outcome="failure",
            resource_type="webhook",
            resource_id=webhook_id,
            request_id=request_id,
            ip_address=ip_address,
            metadata={"reason": exc.reason},
            error_code="SIGNATURE_INVALID",
        )
        raise
