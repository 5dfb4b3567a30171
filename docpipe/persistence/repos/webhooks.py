from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from docpipe.domain.models import WebhookConfig, WebhookDeliveryAttempt


async def get_webhook_config(session: AsyncSession, config_id: str) -> WebhookConfig | None:
    # Use with care; owner checks should be enforced by callers.
    result = await session.execute(select(WebhookConfig).where(WebhookConfig.id == config_id))
    return result.scalar_one_or_none()


async def get_owner_webhook_config(
    session: AsyncSession, owner_id: str, config_id: str
) -> WebhookConfig | None:
    # Return None for owner mismatch to keep 404 semantics.
    result = await session.execute(
        select(WebhookConfig).where(WebhookConfig.id == config_id, WebhookConfig.owner_id == owner_id)
    )
    return result.scalar_one_or_none()


async def list_webhook_configs(
    session: AsyncSession,
    owner_id: str,
    *,
    is_active: bool | None = None,
) -> list[WebhookConfig]:
    stmt = select(WebhookConfig).where(WebhookConfig.owner_id == owner_id)
    if is_active is not None:
        stmt = stmt.where(WebhookConfig.is_active.is_(is_active))
    result = await session.execute(stmt.order_by(WebhookConfig.created_at.desc(), WebhookConfig.id))
    return list(result.scalars().all())


async def count_webhook_configs(session: AsyncSession, owner_id: str) -> int:
    result = await session.execute(
        select(func.count()).select_from(WebhookConfig).where(WebhookConfig.owner_id == owner_id)
    )
    return int(result.scalar() or 0)


async def delete_webhook_config(session: AsyncSession, config: WebhookConfig) -> None:
    # Drop the delivery lineage with its config; nothing can redeliver without a target.
    await session.execute(
        delete(WebhookDeliveryAttempt).where(WebhookDeliveryAttempt.webhook_config_id == config.id)
    )
    await session.delete(config)


async def get_delivery_attempt(session: AsyncSession, attempt_id: str) -> WebhookDeliveryAttempt | None:
    result = await session.execute(
        select(WebhookDeliveryAttempt).where(WebhookDeliveryAttempt.id == attempt_id)
    )
    return result.scalar_one_or_none()


def save_delivery_attempt(session: AsyncSession, attempt: WebhookDeliveryAttempt) -> WebhookDeliveryAttempt:
    session.add(attempt)
    return attempt


async def list_delivery_attempts(
    session: AsyncSession,
    config_id: str,
    *,
    event_type: str | None = None,
    delivered: bool | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[WebhookDeliveryAttempt], int]:
    filters: list[Any] = [WebhookDeliveryAttempt.webhook_config_id == config_id]
    if event_type:
        filters.append(WebhookDeliveryAttempt.event_type == event_type)
    if delivered is True:
        filters.append(WebhookDeliveryAttempt.delivered_at.is_not(None))
    elif delivered is False:
        filters.append(WebhookDeliveryAttempt.delivered_at.is_(None))
    total = await session.execute(
        select(func.count()).select_from(WebhookDeliveryAttempt).where(*filters)
    )
    rows = await session.execute(
        select(WebhookDeliveryAttempt)
        .where(*filters)
        .order_by(WebhookDeliveryAttempt.created_at.desc(), WebhookDeliveryAttempt.id)
        .limit(limit)
        .offset(offset)
    )
    return list(rows.scalars().all()), int(total.scalar() or 0)


async def delivery_status_counts(session: AsyncSession, owner_id: str) -> dict[str, int]:
    result = await session.execute(
        select(WebhookDeliveryAttempt.status, func.count())
        .where(WebhookDeliveryAttempt.owner_id == owner_id)
        .group_by(WebhookDeliveryAttempt.status)
    )
    return {str(status): int(count) for status, count in result.all()}


async def delete_delivery_attempts_before(session: AsyncSession, cutoff: datetime) -> int:
    result = await session.execute(
        delete(WebhookDeliveryAttempt).where(WebhookDeliveryAttempt.created_at < cutoff)
    )
    return int(result.rowcount or 0)
