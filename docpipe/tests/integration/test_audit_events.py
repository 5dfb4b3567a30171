from __future__ import annotations

import pytest
from sqlalchemy import select

from docpipe.core.errors import IntegrityError

from docpipe.core.config import get_settings
from docpipe.domain.models import AuditEvent
from docpipe.services.audit import record_event, sanitize_metadata
from docpipe.services.webhooks import WebhookCreate, WebhookManager, verify_inbound_webhook
from docpipe.services.webhooks.signing import build_signature_headers, format_timestamp, serialize_payload


def test_sanitize_metadata_redacts_credentials() -> None:
    cleaned = sanitize_metadata(
        {
            "url": "https://hooks.example.com",
            "headers": {"X-Signature": "sha256=abc", "X-Team": "docs"},
            "webhook_secret": "deadbeef",
            "items": [{"api-key": "k"}],
        }
    )
    assert cleaned == {
        "url": "https://hooks.example.com",
        "headers": {"X-Signature": "[REDACTED]", "X-Team": "docs"},
        "webhook_secret": "[REDACTED]",
        "items": [{"api-key": "[REDACTED]"}],
    }


@pytest.mark.asyncio
async def test_webhook_changes_are_audited(session_factory, queue) -> None:
    manager = WebhookManager(session_factory=session_factory, queue=queue, settings=get_settings())
    config = await manager.create(
        "user-1",
        WebhookCreate(url="https://hooks.example.com/docpipe", events=["enhancement.failed"]),
    )
    await manager.rotate_secret("user-1", config.id)
    await record_event(
        session_factory=session_factory,
        owner_id=None,
        actor_type="anonymous",
        actor_id="10.0.0.1",
        event_type="security.rate_limited",
        outcome="failure",
        metadata={"authorization": "Bearer x"},
    )

    async with session_factory() as session:
        rows = (await session.execute(select(AuditEvent).order_by(AuditEvent.id))).scalars().all()

    assert [row.event_type for row in rows] == [
        "webhook.created",
        "webhook.secret.rotated",
        "security.rate_limited",
    ]
    assert rows[0].resource_id == config.id
    assert rows[2].metadata_json == {"authorization": "[REDACTED]"}


@pytest.mark.asyncio
async def test_rejected_inbound_signature_is_audited(session_factory) -> None:
    secret = "c" * 64
    body = serialize_payload({"event": "export.completed", "data": {"run_id": "run-1"}})
    headers = build_signature_headers(
        body=body, secret=secret, event_type="export.completed", timestamp=format_timestamp()
    )

    accepted = await verify_inbound_webhook(body, headers, secret, session_factory=session_factory)
    assert accepted.event == "export.completed"

    with pytest.raises(IntegrityError) as exc_info:
        await verify_inbound_webhook(
            body,
            headers,
            "d" * 64,
            session_factory=session_factory,
            owner_id="user-1",
            webhook_id="wh-1",
            ip_address="10.0.0.9",
        )
    assert exc_info.value.reason == "signature_mismatch"

    async with session_factory() as session:
        rows = (await session.execute(select(AuditEvent))).scalars().all()

    assert len(rows) == 1
    assert rows[0].event_type == "security.webhook_signature_rejected"
    assert rows[0].outcome == "failure"
    assert rows[0].resource_id == "wh-1"
    assert rows[0].ip_address == "10.0.0.9"
    assert rows[0].error_code == "SIGNATURE_INVALID"
    assert rows[0].metadata_json == {"reason": "signature_mismatch"}
