from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging
import secrets
from typing import Any, Mapping
from urllib.parse import urlparse
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docpipe.core.config import Settings, get_settings
from docpipe.core.errors import NotFoundError, ValidationError
from docpipe.domain.events import ALL_EVENT_TYPES, DomainEvent, EventData, parse_event_data
from docpipe.domain.models import WebhookConfig, WebhookDeliveryAttempt
from docpipe.persistence.repos import webhooks as webhooks_repo
from docpipe.services.audit import record_event
from docpipe.services.queue.client import JobQueue
from docpipe.services.queue.models import BackoffPolicy
from docpipe.services.webhooks.signing import RESERVED_HEADERS, format_timestamp


logger = logging.getLogger(__name__)

_MAX_URL_LENGTH = 2048
_SECRET_BYTES = 32


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_secret() -> str:
    # 32 random bytes, hex encoded.
    return secrets.token_hex(_SECRET_BYTES)


class RetryPolicy(BaseModel):
    max_attempts: int = Field(default=3, ge=1, le=10)
    initial_delay_ms: int = Field(default=1_000, ge=0, le=3_600_000)
    backoff_multiplier: float = Field(default=2.0, ge=1.0, le=10.0)
    max_delay_ms: int = Field(default=30_000, ge=0, le=86_400_000)

    @model_validator(mode="after")
    def _cap_covers_initial(self) -> "RetryPolicy":
        if self.max_delay_ms < self.initial_delay_ms:
            raise ValueError("max_delay_ms must be >= initial_delay_ms")
        return self

    def backoff(self) -> BackoffPolicy:
        return BackoffPolicy(
            initial_delay_ms=self.initial_delay_ms,
            multiplier=self.backoff_multiplier,
            max_delay_ms=self.max_delay_ms,
        )


class WebhookCreate(BaseModel):
    url: str
    events: list[str]
    headers: dict[str, str] | None = None
    retry_policy: dict[str, Any] | None = None
    description: str | None = Field(default=None, max_length=500)
    is_active: bool = True


class WebhookUpdate(BaseModel):
    url: str | None = None
    events: list[str] | None = None
    headers: dict[str, str] | None = None
    retry_policy: dict[str, Any] | None = None
    description: str | None = Field(default=None, max_length=500)
    is_active: bool | None = None


def parse_retry_policy(raw: Mapping[str, Any] | None) -> RetryPolicy:
    # Omitted fields fall back to 3 attempts, 1s initial delay, x2 multiplier, 30s cap.
    try:
        return RetryPolicy.model_validate(dict(raw or {}))
    except PydanticValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        message = first.get("msg", "invalid retry policy")
        raise ValidationError(f"retry_policy {location}: {message}".strip(), field="retry_policy") from exc


class WebhookManager:
    """Owner-scoped webhook configuration and event fan-out."""

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        queue: JobQueue,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._queue = queue
        self._settings = settings or get_settings()

    @property
    def queue_name(self) -> str:
        return self._settings.webhook_queue_name

    def validate_url(self, url: str) -> str:
        normalized = (url or "").strip()
        if not normalized or len(normalized) > _MAX_URL_LENGTH:
            raise ValidationError("url must be a non-empty absolute URL", field="url")
        parsed = urlparse(normalized)
        allowed = {"https"} if self._settings.is_production else {"https", "http"}
        if parsed.scheme.lower() not in allowed:
            if self._settings.is_production:
                raise ValidationError("url must use https in production", field="url")
            raise ValidationError("url must use http or https", field="url")
        if not parsed.hostname:
            raise ValidationError("url must include a host", field="url")
        return normalized

    @staticmethod
    def validate_events(events: list[str] | None) -> list[str]:
        if not events:
            raise ValidationError("events must contain at least one event type", field="events")
        unknown = sorted({event for event in events if event not in ALL_EVENT_TYPES})
        if unknown:
            raise ValidationError(f"unknown event types: {', '.join(unknown)}", field="events")
        return list(dict.fromkeys(events))

    @staticmethod
    def validate_headers(headers: Mapping[str, Any] | None) -> dict[str, str]:
        # Subscriber headers may not override the signing contract.
        if headers is None:
            return {}
        normalized: dict[str, str] = {}
        for raw_key, raw_value in headers.items():
            key = str(raw_key).strip()
            if not key:
                raise ValidationError("header names must be non-empty", field="headers")
            if key.lower() in RESERVED_HEADERS:
                raise ValidationError(f"header '{key}' is reserved", field="headers")
            normalized[key] = str(raw_value).strip()
        return normalized

    async def create(self, owner_id: str, request: WebhookCreate) -> WebhookConfig:
        url = self.validate_url(request.url)
        events = self.validate_events(request.events)
        headers = self.validate_headers(request.headers)
        policy = parse_retry_policy(request.retry_policy)
        async with self._session_factory() as session:
            existing = await webhooks_repo.count_webhook_configs(session, owner_id)
            if existing >= self._settings.webhook_max_per_owner:
                raise ValidationError(
                    f"webhook limit reached ({self._settings.webhook_max_per_owner})", field="url"
                )
            now = _utc_now()
            config = WebhookConfig(
                id=uuid4().hex,
                owner_id=owner_id,
                url=url,
                secret=generate_secret(),
                events=events,
                headers=headers,
                retry_policy=policy.model_dump(),
                description=request.description,
                is_active=request.is_active,
                created_at=now,
                updated_at=now,
            )
            session.add(config)
            await record_event(
                session=session,
                owner_id=owner_id,
                actor_type="user",
                actor_id=owner_id,
                event_type="webhook.created",
                outcome="success",
                resource_type="webhook",
                resource_id=config.id,
                metadata={"url": url, "events": events},
            )
            await session.commit()
        logger.info("webhook_created owner_id=%s webhook_id=%s events=%s", owner_id, config.id, ",".join(events))
        return config

    async def list(
        self,
        owner_id: str,
        *,
        is_active: bool | None = None,
        event_type: str | None = None,
    ) -> list[WebhookConfig]:
        async with self._session_factory() as session:
            configs = await webhooks_repo.list_webhook_configs(session, owner_id, is_active=is_active)
        if event_type:
            configs = [config for config in configs if event_type in (config.events or [])]
        return configs

    async def get(self, owner_id: str, config_id: str) -> WebhookConfig:
        async with self._session_factory() as session:
            config = await webhooks_repo.get_owner_webhook_config(session, owner_id, config_id)
        if config is None:
            raise NotFoundError(f"webhook {config_id} not found")
        return config

    async def update(self, owner_id: str, config_id: str, request: WebhookUpdate) -> WebhookConfig:
        changes = request.model_dump(exclude_unset=True)
        async with self._session_factory() as session:
            config = await webhooks_repo.get_owner_webhook_config(session, owner_id, config_id)
            if config is None:
                raise NotFoundError(f"webhook {config_id} not found")
            if "url" in changes:
                config.url = self.validate_url(changes["url"])
            if "events" in changes:
                config.events = self.validate_events(changes["events"])
            if "headers" in changes:
                config.headers = self.validate_headers(changes["headers"])
            if "retry_policy" in changes:
                # Partial policy updates merge over the stored policy.
                merged = {**(config.retry_policy or {}), **(changes["retry_policy"] or {})}
                config.retry_policy = parse_retry_policy(merged).model_dump()
            if "description" in changes:
                config.description = changes["description"]
            if "is_active" in changes and changes["is_active"] is not None:
                config.is_active = bool(changes["is_active"])
            config.updated_at = _utc_now()
            await record_event(
                session=session,
                owner_id=owner_id,
                actor_type="user",
                actor_id=owner_id,
                event_type="webhook.updated",
                outcome="success",
                resource_type="webhook",
                resource_id=config.id,
                metadata={"fields": sorted(changes)},
            )
            await session.commit()
        return config

    async def delete(self, owner_id: str, config_id: str) -> None:
        async with self._session_factory() as session:
            config = await webhooks_repo.get_owner_webhook_config(session, owner_id, config_id)
            if config is None:
                raise NotFoundError(f"webhook {config_id} not found")
            await webhooks_repo.delete_webhook_config(session, config)
            await record_event(
                session=session,
                owner_id=owner_id,
                actor_type="user",
                actor_id=owner_id,
                event_type="webhook.deleted",
                outcome="success",
                resource_type="webhook",
                resource_id=config_id,
            )
            await session.commit()
        logger.info("webhook_deleted owner_id=%s webhook_id=%s", owner_id, config_id)

    async def rotate_secret(self, owner_id: str, config_id: str) -> str:
        # Replacement is immediate; there is no window where the old secret still verifies.
        async with self._session_factory() as session:
            config = await webhooks_repo.get_owner_webhook_config(session, owner_id, config_id)
            if config is None:
                raise NotFoundError(f"webhook {config_id} not found")
            new_secret = generate_secret()
            config.secret = new_secret
            config.secret_rotated_at = _utc_now()
            config.updated_at = config.secret_rotated_at
            await record_event(
                session=session,
                owner_id=owner_id,
                actor_type="user",
                actor_id=owner_id,
                event_type="webhook.secret.rotated",
                outcome="success",
                resource_type="webhook",
                resource_id=config_id,
            )
            await session.commit()
        logger.warning("webhook_secret_rotated owner_id=%s webhook_id=%s", owner_id, config_id)
        return new_secret

    async def handle_event(self, event: DomainEvent) -> None:
        # Event bus subscriber.
        await self.trigger_webhooks(
            event.owner_id,
            event.event_type.value,
            event.data,
            occurred_at=event.occurred_at,
        )

    async def trigger_webhooks(
        self,
        owner_id: str,
        event_type: str,
        payload: EventData | Mapping[str, Any],
        *,
        occurred_at: datetime | None = None,
    ) -> list[str]:
        # Each target is attempted independently; one failing enqueue never blocks the others.
        if event_type not in ALL_EVENT_TYPES:
            raise ValidationError(f"unknown event type {event_type}", field="event_type")
        if isinstance(payload, BaseModel):
            data = payload
        else:
            try:
                data = parse_event_data(event_type, dict(payload))
            except PydanticValidationError as exc:
                raise ValidationError(f"invalid payload for {event_type}", field="payload") from exc
        if data.event != event_type:
            raise ValidationError(f"payload shape does not match {event_type}", field="payload")
        envelope = DomainEvent(owner_id=owner_id, data=data, occurred_at=occurred_at or _utc_now()).wire_payload()

        targets = await self.list(owner_id, is_active=True, event_type=event_type)
        if not targets:
            return []
        outcomes = await asyncio.gather(
            *[self.queue_delivery(config, event_type, envelope) for config in targets],
            return_exceptions=True,
        )
        queued: list[str] = []
        for config, outcome in zip(targets, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    "webhook_fanout_failed owner_id=%s webhook_id=%s event_type=%s error=%s",
                    owner_id,
                    config.id,
                    event_type,
                    type(outcome).__name__,
                    exc_info=outcome,
                )
                continue
            queued.append(outcome)
        logger.info(
            "webhook_fanout owner_id=%s event_type=%s targets=%s queued=%s",
            owner_id,
            event_type,
            len(targets),
            len(queued),
        )
        return queued

    async def queue_delivery(
        self,
        config: WebhookConfig,
        event_type: str,
        envelope: dict[str, Any],
    ) -> str:
        # One attempt row per (event, config); retries mutate it rather than adding rows.
        policy = parse_retry_policy(config.retry_policy)
        now = _utc_now()
        attempt = WebhookDeliveryAttempt(
            id=uuid4().hex,
            webhook_config_id=config.id,
            owner_id=config.owner_id,
            event_type=event_type,
            payload=envelope,
            status="pending",
            attempt_count=0,
            max_attempts=policy.max_attempts,
            created_at=now,
            updated_at=now,
        )
        async with self._session_factory() as session:
            webhooks_repo.save_delivery_attempt(session, attempt)
            await session.commit()
        await self._enqueue_attempt(attempt.id, policy, job_id=attempt.id)
        return attempt.id

    async def _enqueue_attempt(self, attempt_id: str, policy: RetryPolicy, *, job_id: str) -> str:
        try:
            queued_id = await self._queue.enqueue(
                self.queue_name,
                {"attempt_id": attempt_id},
                max_attempts=policy.max_attempts,
                backoff=policy.backoff(),
                job_id=job_id,
            )
        except Exception as exc:
            async with self._session_factory() as session:
                attempt = await webhooks_repo.get_delivery_attempt(session, attempt_id)
                if attempt is not None:
                    attempt.status = "failed"
                    attempt.error = f"enqueue_failed: {type(exc).__name__}"
                    attempt.updated_at = _utc_now()
                    await session.commit()
            raise
        async with self._session_factory() as session:
            attempt = await webhooks_repo.get_delivery_attempt(session, attempt_id)
            if attempt is not None:
                attempt.job_id = queued_id
                await session.commit()
        return queued_id

    async def get_delivery_logs(
        self,
        owner_id: str,
        config_id: str,
        *,
        event_type: str | None = None,
        delivered: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[WebhookDeliveryAttempt], int]:
        await self.get(owner_id, config_id)
        async with self._session_factory() as session:
            return await webhooks_repo.list_delivery_attempts(
                session,
                config_id,
                event_type=event_type,
                delivered=delivered,
                limit=max(1, min(int(limit), 100)),
                offset=max(0, int(offset)),
            )

    async def retry_delivery(self, owner_id: str, config_id: str, attempt_id: str) -> str:
        # Manual redelivery reuses the same attempt row and grants a fresh retry budget.
        config = await self.get(owner_id, config_id)
        policy = parse_retry_policy(config.retry_policy)
        async with self._session_factory() as session:
            attempt = await webhooks_repo.get_delivery_attempt(session, attempt_id)
            if attempt is None or attempt.webhook_config_id != config_id:
                raise NotFoundError(f"delivery {attempt_id} not found")
            if attempt.delivered_at is not None:
                raise ValidationError("delivery already succeeded", field="attempt_id")
            if attempt.status in ("pending", "retrying"):
                raise ValidationError("delivery is still in progress", field="attempt_id")
            attempt.status = "pending"
            attempt.error = None
            attempt.next_retry_at = None
            attempt.max_attempts = int(attempt.attempt_count) + policy.max_attempts
            attempt.updated_at = _utc_now()
            redelivery = int(attempt.attempt_count)
            await session.commit()
        logger.info("webhook_delivery_retry owner_id=%s webhook_id=%s attempt_id=%s", owner_id, config_id, attempt_id)
        return await self._enqueue_attempt(attempt_id, policy, job_id=f"{attempt_id}-r{redelivery}")

    async def delivery_stats(self, owner_id: str) -> dict[str, Any]:
        async with self._session_factory() as session:
            counts = await webhooks_repo.delivery_status_counts(session, owner_id)
            configs = await webhooks_repo.list_webhook_configs(session, owner_id)
        total = sum(counts.values())
        delivered = counts.get("delivered", 0)
        failed = counts.get("failed", 0)
        finished = delivered + failed
        return {
            "webhooks": len(configs),
            "active_webhooks": sum(1 for config in configs if config.is_active),
            "total_deliveries": total,
            "delivered": delivered,
            "failed": failed,
            "pending": counts.get("pending", 0) + counts.get("retrying", 0),
            "success_rate": round(delivered / finished, 4) if finished else None,
        }

    async def cleanup_old_delivery_logs(self, days_to_keep: int | None = None) -> int:
        days = self._settings.webhook_delivery_retention_days if days_to_keep is None else int(days_to_keep)
        if days < 1:
            raise ValidationError("days_to_keep must be >= 1", field="days_to_keep")
        cutoff = _utc_now() - timedelta(days=days)
        async with self._session_factory() as session:
            deleted = await webhooks_repo.delete_delivery_attempts_before(session, cutoff)
            await session.commit()
        logger.info("webhook_delivery_logs_pruned deleted=%s cutoff=%s", deleted, format_timestamp(cutoff))
        return deleted
