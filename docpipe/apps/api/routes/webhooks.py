from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, Response, status
from pydantic import BaseModel

from docpipe.apps.api.deps import Principal, get_container, get_current_principal
from docpipe.apps.api.rate_limit import rate_limited
from docpipe.apps.api.response import SuccessEnvelope, success_response
from docpipe.domain.models import WebhookConfig, WebhookDeliveryAttempt
from docpipe.services.container import ServiceContainer
from docpipe.services.rate_limit import ENDPOINT_AUTH, ENDPOINT_WEBHOOKS
from docpipe.services.webhooks.manager import WebhookCreate, WebhookUpdate

router = APIRouter(
    prefix="/webhooks",
    tags=["webhooks"],
    dependencies=[Depends(rate_limited(ENDPOINT_WEBHOOKS))],
)


class WebhookResponse(BaseModel):
    id: str
    url: str
    events: list[str]
    headers: dict[str, str]
    retry_policy: dict[str, Any]
    description: str | None = None
    is_active: bool
    # Only returned by create and rotate-secret.
    secret: str | None = None
    secret_hint: str
    secret_rotated_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class SecretRotated(BaseModel):
    id: str
    secret: str
    rotated_at: datetime | None = None


class DeliveryAttemptResponse(BaseModel):
    id: str
    webhook_id: str
    event_type: str
    status: str
    attempt_count: int
    max_attempts: int
    http_status: int | None = None
    error: str | None = None
    response_excerpt: str | None = None
    duration_ms: int | None = None
    delivered_at: datetime | None = None
    next_retry_at: datetime | None = None
    last_attempt_at: datetime | None = None
    created_at: datetime | None = None


class DeliveryPage(BaseModel):
    items: list[DeliveryAttemptResponse]
    total: int
    limit: int
    offset: int


class RetryQueued(BaseModel):
    attempt_id: str
    job_id: str


def _webhook_response(config: WebhookConfig, *, include_secret: bool = False) -> WebhookResponse:
    return WebhookResponse(
        id=config.id,
        url=config.url,
        events=list(config.events or []),
        headers=dict(config.headers or {}),
        retry_policy=dict(config.retry_policy or {}),
        description=config.description,
        is_active=bool(config.is_active),
        secret=config.secret if include_secret else None,
        secret_hint=f"...{config.secret[-4:]}",
        secret_rotated_at=config.secret_rotated_at,
        created_at=config.created_at,
        updated_at=config.updated_at,
    )


def _attempt_response(attempt: WebhookDeliveryAttempt) -> DeliveryAttemptResponse:
    return DeliveryAttemptResponse(
        id=attempt.id,
        webhook_id=attempt.webhook_config_id,
        event_type=attempt.event_type,
        status=attempt.status,
        attempt_count=int(attempt.attempt_count or 0),
        max_attempts=int(attempt.max_attempts or 0),
        http_status=attempt.http_status,
        error=attempt.error,
        response_excerpt=attempt.response_excerpt,
        duration_ms=attempt.duration_ms,
        delivered_at=attempt.delivered_at,
        next_retry_at=attempt.next_retry_at,
        last_attempt_at=attempt.last_attempt_at,
        created_at=attempt.created_at,
    )


@router.post("", status_code=status.HTTP_201_CREATED, response_model=SuccessEnvelope[WebhookResponse])
async def create_webhook(
    payload: WebhookCreate,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    # The secret is shown once here; later reads only expose a hint.
    config = await container.webhooks.create(principal.user_id, payload)
    return success_response(request=request, data=_webhook_response(config, include_secret=True))


@router.get("", response_model=SuccessEnvelope[list[WebhookResponse]])
async def list_webhooks(
    request: Request,
    is_active: bool | None = Query(default=None),
    event_type: str | None = Query(default=None),
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    configs = await container.webhooks.list(principal.user_id, is_active=is_active, event_type=event_type)
    return success_response(
        request=request,
        data=[_webhook_response(config).model_dump(mode="json") for config in configs],
    )


@router.get("/stats")
async def webhook_stats(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    stats = await container.webhooks.delivery_stats(principal.user_id)
    return success_response(request=request, data=stats)


@router.get("/{webhook_id}", response_model=SuccessEnvelope[WebhookResponse])
async def get_webhook(
    webhook_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    config = await container.webhooks.get(principal.user_id, webhook_id)
    return success_response(request=request, data=_webhook_response(config))


@router.patch("/{webhook_id}", response_model=SuccessEnvelope[WebhookResponse])
async def update_webhook(
    webhook_id: str,
    payload: WebhookUpdate,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    config = await container.webhooks.update(principal.user_id, webhook_id, payload)
    return success_response(request=request, data=_webhook_response(config))


@router.delete("/{webhook_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_webhook(
    webhook_id: str,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
) -> Response:
    await container.webhooks.delete(principal.user_id, webhook_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Secret issuance also draws from the tighter credential budget.
@router.post(
    "/{webhook_id}/rotate-secret",
    response_model=SuccessEnvelope[SecretRotated],
    dependencies=[Depends(rate_limited(ENDPOINT_AUTH))],
)
async def rotate_webhook_secret(
    webhook_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    # Rotation is immediate; subscribers must switch to the returned secret right away.
    secret = await container.webhooks.rotate_secret(principal.user_id, webhook_id)
    config = await container.webhooks.get(principal.user_id, webhook_id)
    payload = SecretRotated(id=webhook_id, secret=secret, rotated_at=config.secret_rotated_at)
    return success_response(request=request, data=payload)


@router.get("/{webhook_id}/deliveries", response_model=SuccessEnvelope[DeliveryPage])
async def list_webhook_deliveries(
    webhook_id: str,
    request: Request,
    event_type: str | None = Query(default=None),
    delivered: bool | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    attempts, total = await container.webhooks.get_delivery_logs(
        principal.user_id,
        webhook_id,
        event_type=event_type,
        delivered=delivered,
        limit=limit,
        offset=offset,
    )
    page = DeliveryPage(
        items=[_attempt_response(attempt) for attempt in attempts],
        total=total,
        limit=limit,
        offset=offset,
    )
    return success_response(request=request, data=page)


@router.post(
    "/{webhook_id}/deliveries/{attempt_id}/retry",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SuccessEnvelope[RetryQueued],
)
async def retry_webhook_delivery(
    webhook_id: str,
    attempt_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    job_id = await container.webhooks.retry_delivery(principal.user_id, webhook_id, attempt_id)
    return success_response(request=request, data=RetryQueued(attempt_id=attempt_id, job_id=job_id))
