from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from docpipe.apps.api.errors import (
    docpipe_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from docpipe.apps.api.response import API_VERSION
from docpipe.apps.api.routes.enhance import router as enhance_router
from docpipe.apps.api.routes.health import router as health_router
from docpipe.apps.api.routes.ops import router as ops_router
from docpipe.apps.api.routes.runs import router as runs_router
from docpipe.apps.api.routes.webhooks import router as webhooks_router
from docpipe.core.errors import DocpipeError
from docpipe.core.logging import configure_logging, request_id_var
from docpipe.services.container import ServiceContainer, build_container
from docpipe.services.store import close_redis


logger = logging.getLogger(__name__)


def create_app(container: ServiceContainer | None = None) -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # Injected containers are owned by the caller; built ones are closed here.
        owned = container is None
        app.state.container = container or build_container()
        try:
            yield
        finally:
            if owned:
                await app.state.container.aclose()
                await close_redis()

    app = FastAPI(title="docpipe API", version=API_VERSION, lifespan=lifespan)
    if container is not None:
        app.state.container = container

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        start = time.monotonic()
        try:
            response = await call_next(request)
            latency_ms = (time.monotonic() - start) * 1000.0
            logger.info(
                "request_completed method=%s path=%s status=%s latency_ms=%.1f",
                request.method,
                request.url.path,
                response.status_code,
                latency_ms,
            )
        finally:
            request_id_var.reset(token)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(DocpipeError, docpipe_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(enhance_router, prefix=f"/{API_VERSION}")
    app.include_router(runs_router, prefix=f"/{API_VERSION}")
    app.include_router(webhooks_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
