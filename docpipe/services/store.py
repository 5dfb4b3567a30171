from __future__ import annotations

import asyncio
from contextlib import contextmanager
from typing import Iterator

from redis.asyncio import Redis
from redis.exceptions import RedisError

from docpipe.core.config import get_settings
from docpipe.core.errors import StoreUnavailableError


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def get_redis() -> Redis:
    # Cache one Redis client per event loop so requests and workers share connections.
    global _redis_pool, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = Redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            _redis_loop = current_loop
    return _redis_pool


async def close_redis() -> None:
    global _redis_pool, _redis_loop
    if _redis_pool is not None:
        await _redis_pool.aclose()
    _redis_pool = None
    _redis_loop = None


def reset_store_state() -> None:
    # Reset cached Redis connections for deterministic test setup.
    global _redis_pool, _redis_loop
    _redis_pool = None
    _redis_loop = None


@contextmanager
def store_errors(operation: str) -> Iterator[None]:
    # Redis client failures surface as the domain store error.
    try:
        yield
    except RedisError as exc:
        raise StoreUnavailableError(f"{operation} failed: {type(exc).__name__}") from exc
