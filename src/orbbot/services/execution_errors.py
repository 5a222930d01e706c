from __future__ import annotations

from enum import Enum

import httpx

from orbbot.adapters.game import (
    AlreadyAppliedError,
    ConfigurationError,
    InsufficientStateError,
    PreconditionError,
    TransientRemoteError,
)

_ALREADY_APPLIED_MARKERS = ("already", "duplicate")
_INSUFFICIENT_MARKERS = ("insufficient", "not enough")


class ExecutionErrorCategory(str, Enum):
    TRANSIENT = "transient"
    ALREADY_APPLIED = "already_applied"
    INSUFFICIENT_STATE = "insufficient_state"
    PRECONDITION = "precondition"
    FATAL = "fatal"


def classify_remote_error(exc: Exception) -> ExecutionErrorCategory:
    if isinstance(exc, AlreadyAppliedError):
        return ExecutionErrorCategory.ALREADY_APPLIED
    if isinstance(exc, InsufficientStateError):
        return ExecutionErrorCategory.INSUFFICIENT_STATE
    if isinstance(exc, PreconditionError | ConfigurationError):
        return ExecutionErrorCategory.PRECONDITION
    if isinstance(exc, TransientRemoteError):
        return ExecutionErrorCategory.TRANSIENT
    if isinstance(exc, httpx.TimeoutException | httpx.NetworkError):
        return ExecutionErrorCategory.TRANSIENT
    if isinstance(exc, httpx.HTTPStatusError) and exc.response is not None:
        status = int(exc.response.status_code)
        if status == 429 or status >= 500:
            return ExecutionErrorCategory.TRANSIENT
    if isinstance(exc, httpx.TransportError | TimeoutError | ConnectionError):
        return ExecutionErrorCategory.TRANSIENT

    message = str(exc).casefold()
    if any(marker in message for marker in _ALREADY_APPLIED_MARKERS):
        return ExecutionErrorCategory.ALREADY_APPLIED
    if any(marker in message for marker in _INSUFFICIENT_MARKERS):
        return ExecutionErrorCategory.INSUFFICIENT_STATE
    return ExecutionErrorCategory.FATAL
