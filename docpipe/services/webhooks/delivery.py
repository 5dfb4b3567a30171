from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import time
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docpipe.core.config import Settings, get_settings
from docpipe.core.errors import TerminalExecutionError, TransientExecutionError
from docpipe.domain.models import WebhookConfig, WebhookDeliveryAttempt
from docpipe.persistence.repos import webhooks as webhooks_repo
from docpipe.services.queue.models import Job
from docpipe.services.queue.worker import JobContext
from docpipe.services.webhooks.signing import (
    HEADER_DELIVERY_ATTEMPT,
    HEADER_DELIVERY_ID,
    build_signature_headers,
    format_timestamp,
    serialize_payload,
)


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DeliveryOutcome:
    delivered: bool
    retryable: bool
    http_status: int | None = None
    error: str | None = None


def classify_outcome(
    *,
    status_code: int | None = None,
    exc: BaseException | None = None,
) -> DeliveryOutcome:
    """Map one HTTP attempt to delivered, retryable or terminal.

    2xx is delivered. 5xx, timeouts and transport errors are retried.
    Every 4xx is terminal, including 408 and 429; subscribers that want a
    retry must answer 5xx. Redirects are not followed and count as terminal.
    """
    if exc is not None:
        if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
            return DeliveryOutcome(delivered=False, retryable=True, error="timeout")
        if isinstance(exc, httpx.TransportError):
            return DeliveryOutcome(delivered=False, retryable=True, error=f"network_error: {type(exc).__name__}")
        return DeliveryOutcome(delivered=False, retryable=True, error=f"delivery_error: {type(exc).__name__}")
    if status_code is None:
        return DeliveryOutcome(delivered=False, retryable=True, error="no_response")
    if 200 <= status_code < 300:
        return DeliveryOutcome(delivered=True, retryable=False, http_status=status_code)
    if status_code >= 500:
        return DeliveryOutcome(delivered=False, retryable=True, http_status=status_code, error=f"http_{status_code}")
    return DeliveryOutcome(delivered=False, retryable=False, http_status=status_code, error=f"http_{status_code}")


def build_delivery_headers(
    config: WebhookConfig,
    attempt: WebhookDeliveryAttempt,
    *,
    body: str,
    attempt_number: int,
    timestamp: str,
    user_agent: str,
) -> dict[str, str]:
    # Custom headers go first so the sender-owned headers always win.
    headers: dict[str, str] = {str(key): str(value) for key, value in (config.headers or {}).items()}
    headers["Content-Type"] = "application/json"
    headers["User-Agent"] = user_agent
    headers[HEADER_DELIVERY_ID] = attempt.id
    headers[HEADER_DELIVERY_ATTEMPT] = str(attempt_number)
    headers.update(
        build_signature_headers(
            body=body,
            secret=config.secret,
            event_type=attempt.event_type,
            timestamp=timestamp,
        )
    )
    return headers


class WebhookDeliveryWorker:
    """Queue handler that signs and POSTs one delivery attempt per job run."""

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        http_client: httpx.AsyncClient | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._http_client = http_client
        self._settings = settings or get_settings()

    async def process(self, job: Job, context: JobContext) -> dict[str, Any]:
        attempt_id = str((job.payload or {}).get("attempt_id") or "")
        if not attempt_id:
            raise TerminalExecutionError("delivery job has no attempt_id")

        # No session stays open across the outbound POST.
        async with self._session_factory() as session:
            attempt = await webhooks_repo.get_delivery_attempt(session, attempt_id)
            if attempt is None:
                raise TerminalExecutionError(f"delivery attempt {attempt_id} not found")
            if attempt.delivered_at is not None:
                return {"attempt_id": attempt_id, "skipped": True}
            # Secret and headers come from the current config so rotation applies to the next retry.
            config = await webhooks_repo.get_webhook_config(session, attempt.webhook_config_id)
            if config is None or not config.is_active:
                reason = "webhook_deleted" if config is None else "webhook_inactive"
                attempt.status = "failed"
                attempt.error = reason
                attempt.next_retry_at = None
                attempt.updated_at = _utc_now()
                await session.commit()
                logger.warning(
                    "webhook_delivery_abandoned attempt_id=%s webhook_id=%s reason=%s",
                    attempt_id,
                    attempt.webhook_config_id,
                    reason,
                )
                raise TerminalExecutionError(reason)

            attempt_number = int(attempt.attempt_count or 0) + 1
            max_attempts = int(attempt.max_attempts)
            event_type = attempt.event_type
            config_id = attempt.webhook_config_id
            body = serialize_payload(attempt.payload or {})
            headers = build_delivery_headers(
                config,
                attempt,
                body=body,
                attempt_number=attempt_number,
                timestamp=format_timestamp(),
                user_agent=self._settings.webhook_user_agent,
            )
            url = config.url

        await context.update_progress(10)
        started = time.perf_counter()
        outcome, excerpt = await self._post(url, body, headers)
        duration_ms = int((time.perf_counter() - started) * 1000)
        will_retry = (
            not outcome.delivered
            and outcome.retryable
            and attempt_number < max_attempts
            and job.attempts < job.max_attempts
        )

        async with self._session_factory() as session:
            attempt = await webhooks_repo.get_delivery_attempt(session, attempt_id)
            if attempt is None:
                raise TerminalExecutionError(f"delivery attempt {attempt_id} not found")
            now = _utc_now()
            attempt.attempt_count = attempt_number
            attempt.last_attempt_at = now
            attempt.http_status = outcome.http_status
            attempt.error = outcome.error
            attempt.response_excerpt = excerpt
            attempt.duration_ms = duration_ms
            attempt.job_id = job.id
            attempt.updated_at = now
            if outcome.delivered:
                attempt.status = "delivered"
                attempt.delivered_at = now
                attempt.next_retry_at = None
            elif will_retry:
                attempt.status = "retrying"
                attempt.next_retry_at = now + timedelta(milliseconds=job.backoff.delay_ms(job.attempts))
            else:
                attempt.status = "failed"
                attempt.next_retry_at = None
            await session.commit()

        if outcome.delivered:
            logger.info(
                "webhook_delivered attempt_id=%s webhook_id=%s event_type=%s status=%s attempt=%s duration_ms=%s",
                attempt_id,
                config_id,
                event_type,
                outcome.http_status,
                attempt_number,
                duration_ms,
            )
            return {"attempt_id": attempt_id, "http_status": outcome.http_status, "attempt": attempt_number}

        logger.warning(
            "webhook_delivery_failed attempt_id=%s webhook_id=%s event_type=%s status=%s attempt=%s retry=%s error=%s excerpt=%s",
            attempt_id,
            config_id,
            event_type,
            outcome.http_status,
            attempt_number,
            will_retry,
            outcome.error,
            excerpt,
        )
        if will_retry:
            raise TransientExecutionError(outcome.error or "delivery failed")
        raise TerminalExecutionError(outcome.error or "delivery failed")

    async def _post(self, url: str, body: str, headers: dict[str, str]) -> tuple[DeliveryOutcome, str | None]:
        timeout_s = max(0.1, self._settings.webhook_timeout_ms / 1000.0)
        limit = self._settings.webhook_response_excerpt_chars
        try:
            if self._http_client is not None:
                response = await self._http_client.post(
                    url, content=body.encode("utf-8"), headers=headers, timeout=timeout_s
                )
            else:
                async with httpx.AsyncClient(timeout=timeout_s) as client:
                    response = await client.post(url, content=body.encode("utf-8"), headers=headers)
        except (httpx.HTTPError, asyncio.TimeoutError, OSError) as exc:
            return classify_outcome(exc=exc), None
        excerpt = response.text[:limit] if response.text else None
        return classify_outcome(status_code=int(response.status_code)), excerpt

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
