from __future__ import annotations

from fastapi import Depends, Header, HTTPException, Request, status
from pydantic import BaseModel

from docpipe.domain.state import Tier, normalize_tier
from docpipe.services.container import ServiceContainer


class Principal(BaseModel):
    # Identity asserted by the upstream gateway; authentication happens there.
    user_id: str
    tier: Tier


def get_container(request: Request) -> ServiceContainer:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "SERVICE_UNAVAILABLE", "message": "Service is starting"},
        )
    return container


def client_ip(request: Request) -> str:
    # First X-Forwarded-For hop, then X-Real-IP, then the socket peer.
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = (request.headers.get("X-Real-IP") or "").strip()
    if real_ip:
        return real_ip
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def get_optional_principal(
    x_user_id: str | None = Header(default=None, alias="X-User-Id", max_length=128),
    x_user_tier: str | None = Header(default=None, alias="X-User-Tier", max_length=32),
) -> Principal | None:
    user_id = (x_user_id or "").strip()
    if not user_id:
        return None
    tier = normalize_tier(x_user_tier or Tier.FREE.value)
    if tier == Tier.ANONYMOUS:
        tier = Tier.FREE
    return Principal(user_id=user_id, tier=tier)


async def get_current_principal(
    principal: Principal | None = Depends(get_optional_principal),
) -> Principal:
    if principal is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "AUTH_UNAUTHORIZED", "message": "X-User-Id header is required"},
        )
    return principal
