from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Mapping

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.requests import Request

from docpipe.domain.models import AuditEvent


logger = logging.getLogger(__name__)

# Webhook secrets, signature headers and gateway credentials never reach the audit table.
_REDACT_MARKERS = ("secret", "signature", "authorization", "token", "password", "api_key")
_REDACTED = "[REDACTED]"
_MAX_TEXT = 1_000


def _redact_key(key: str) -> bool:
    lowered = key.lower().replace("-", "_")
    return any(marker in lowered for marker in _REDACT_MARKERS)


def sanitize_metadata(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {
            str(key): _REDACTED if _redact_key(str(key)) else sanitize_metadata(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    if isinstance(value, str) and len(value) > _MAX_TEXT:
        return value[:_MAX_TEXT]
    return value


def get_request_context(request: Request | None) -> dict[str, str | None]:
    """Request id and caller address for audit rows written from route handlers."""
    if request is None:
        return {"request_id": None, "ip_address": None}
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    forwarded = (request.headers.get("X-Forwarded-For") or "").split(",")[0].strip()
    ip_address = forwarded or (request.client.host if request.client else None)
    return {"request_id": request_id, "ip_address": ip_address}


async def record_event(
    *,
    session: AsyncSession | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    owner_id: str | None,
    actor_type: str,
    actor_id: str | None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    commit: bool = False,
    best_effort: bool = True,
) -> None:
    """Append one audit row for a webhook change or an admission-control event.

    With ``session`` the row joins the caller's transaction (committed only when
    ``commit`` is set). Otherwise a short-lived session from ``session_factory``
    writes it on its own. Write failures are logged and swallowed unless
    ``best_effort`` is False.
    """
    row = AuditEvent(
        occurred_at=datetime.now(timezone.utc),
        owner_id=owner_id,
        actor_type=actor_type,
        actor_id=actor_id,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        ip_address=ip_address,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )
    if session is not None:
        await _write(session, row, commit=commit, best_effort=best_effort)
        return
    if session_factory is None:
        from docpipe.persistence.db import SessionLocal

        session_factory = SessionLocal
    async with session_factory() as own_session:
        await _write(own_session, row, commit=True, best_effort=best_effort)


async def _write(session: AsyncSession, row: AuditEvent, *, commit: bool, best_effort: bool) -> None:
    try:
        session.add(row)
        if commit:
            await session.commit()
    except SQLAlchemyError:
        if commit:
            await session.rollback()
        if not best_effort:
            raise
        logger.warning(
            "audit_event_write_failed event_type=%s resource_id=%s request_id=%s",
            row.event_type,
            row.resource_id,
            row.request_id,
            exc_info=True,
        )
