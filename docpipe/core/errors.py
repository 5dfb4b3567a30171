from __future__ import annotations

import asyncio
from typing import Any

import httpx


class DocpipeError(Exception):
    """Base error for docpipe."""


class AdmissionDenied(DocpipeError):
    """Request rejected by the rate limiter."""

    def __init__(self, message: str, *, retry_after_ms: int, decision: Any = None) -> None:
        super().__init__(message)
        self.retry_after_ms = retry_after_ms
        self.decision = decision


class AdmissionUnavailable(DocpipeError):
    """Rate-limit store unreachable while running fail-closed."""


class StoreUnavailableError(DocpipeError):
    """Shared counter/queue store could not be reached."""


class ValidationError(DocpipeError):
    """Invalid caller input such as a malformed webhook URL or retry policy."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class NotFoundError(DocpipeError):
    """Referenced run, job, or webhook does not exist for the caller."""


class TransientExecutionError(DocpipeError):
    """Recoverable execution failure; retried with backoff."""


class TerminalExecutionError(DocpipeError):
    """Unrecoverable execution failure; persisted and never retried."""


class IntegrityError(DocpipeError):
    """Webhook signature mismatch or stale timestamp."""

    def __init__(self, message: str, *, reason: str) -> None:
        super().__init__(message)
        self.reason = reason


_TERMINAL_TYPES: tuple[type[BaseException], ...] = (
    TerminalExecutionError,
    ValidationError,
    NotFoundError,
    ValueError,
    LookupError,
)
_TRANSIENT_TYPES: tuple[type[BaseException], ...] = (
    TransientExecutionError,
    StoreUnavailableError,
    asyncio.TimeoutError,
    TimeoutError,
    httpx.TransportError,
    ConnectionError,
    OSError,
)


def is_retryable(exc: BaseException) -> bool:
    # Explicit transient types win over the terminal catch-alls they may subclass.
    if isinstance(exc, _TRANSIENT_TYPES):
        return True
    if isinstance(exc, _TERMINAL_TYPES):
        return False
    return True
