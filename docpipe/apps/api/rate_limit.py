from __future__ import annotations

import logging
import math
import random

from fastapi import Depends, Request, Response

from docpipe.apps.api.deps import Principal, client_ip, get_container, get_optional_principal
from docpipe.core.errors import AdmissionDenied
from docpipe.services.audit import get_request_context, record_event
from docpipe.services.container import ServiceContainer
from docpipe.services.rate_limit import ENDPOINT_DEFAULT, Decision, DualDecision


logger = logging.getLogger(__name__)

# Store outages can be long; sample degraded audit rows instead of writing one per request.
_DEGRADED_SAMPLE_RATE = 0.05


def rate_limit_headers(decision: Decision) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(int(math.ceil(decision.reset_at_ms / 1000.0))),
    }


def throttle_headers(decision: DualDecision) -> dict[str, str]:
    headers = rate_limit_headers(decision.surfaced)
    headers["Retry-After"] = str(max(1, int(math.ceil(decision.retry_after_ms / 1000.0))))
    headers["X-RateLimit-Scope"] = decision.most_restrictive
    return headers


async def enforce_rate_limit(
    *,
    request: Request,
    response: Response,
    principal: Principal | None,
    container: ServiceContainer,
    endpoint: str = ENDPOINT_DEFAULT,
) -> DualDecision | None:
    settings = container.settings
    if not settings.rate_limit_enabled:
        return None

    ip = client_ip(request)
    user_id = principal.user_id if principal else None
    # Fail-closed outages raise AdmissionUnavailable, rendered as 503 by the error handlers.
    decision = await container.rate_limiter.check_request(
        user_id=user_id,
        client_ip=ip,
        tier=principal.tier.value if principal else None,
        endpoint=endpoint,
    )

    request_ctx = get_request_context(request)
    if decision.degraded:
        response.headers["X-RateLimit-Status"] = "degraded"
        if random.random() < _DEGRADED_SAMPLE_RATE:
            await record_event(
                session_factory=container.session_factory,
                owner_id=user_id,
                actor_type="system",
                actor_id="rate_limit",
                event_type="system.rate_limit.degraded",
                outcome="failure",
                resource_type="rate_limit",
                request_id=request_ctx["request_id"],
                ip_address=ip,
                metadata={"endpoint": endpoint, "path": request.url.path, "fail_mode": settings.rl_fail_mode},
            )
        return decision

    if decision.allowed:
        for key, value in rate_limit_headers(decision.surfaced).items():
            response.headers[key] = value
        return decision

    logger.info(
        "rate_limited endpoint=%s user_id=%s client_ip=%s most_restrictive=%s retry_after_ms=%s",
        endpoint,
        user_id,
        ip,
        decision.most_restrictive,
        decision.retry_after_ms,
    )
    await record_event(
        session_factory=container.session_factory,
        owner_id=user_id,
        actor_type="user" if user_id else "anonymous",
        actor_id=user_id or ip,
        event_type="security.rate_limited",
        outcome="failure",
        resource_type="rate_limit",
        request_id=request_ctx["request_id"],
        ip_address=ip,
        metadata={
            "endpoint": endpoint,
            "path": request.url.path,
            "most_restrictive": decision.most_restrictive,
            "denied": list(decision.denied),
            "retry_after_ms": decision.retry_after_ms,
        },
    )
    raise AdmissionDenied("Rate limit exceeded", retry_after_ms=decision.retry_after_ms, decision=decision)


def rate_limited(endpoint: str = ENDPOINT_DEFAULT):
    """Route dependency that admits or rejects the request for one endpoint class."""

    async def _dependency(
        request: Request,
        response: Response,
        principal: Principal | None = Depends(get_optional_principal),
        container: ServiceContainer = Depends(get_container),
    ) -> DualDecision | None:
        return await enforce_rate_limit(
            request=request,
            response=response,
            principal=principal,
            container=container,
            endpoint=endpoint,
        )

    return _dependency
