"""Per-cycle fields stamped onto every JSON log line."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from types import MappingProxyType

CONTEXT_FIELDS = ("run_id", "cycle_id", "operation", "signature")

_EMPTY: Mapping[str, str] = MappingProxyType({})
_LOG_CONTEXT: ContextVar[Mapping[str, str]] = ContextVar("orbbot_log_context", default=_EMPTY)


def get_logging_context() -> dict[str, str | None]:
    return dict(_LOG_CONTEXT.get())


@contextmanager
def with_logging_context(**context: object) -> Iterator[None]:
    """Layer ``context`` over the enclosing scope; unknown keys and ``None`` values are dropped."""
    updates = {
        key: str(value)
        for key, value in context.items()
        if key in CONTEXT_FIELDS and value is not None
    }
    if not updates:
        yield
        return
    token = _LOG_CONTEXT.set(MappingProxyType({**_LOG_CONTEXT.get(), **updates}))
    try:
        yield
    finally:
        _LOG_CONTEXT.reset(token)


@contextmanager
def with_cycle_context(cycle_id: int | str, run_id: str | None = None) -> Iterator[None]:
    with with_logging_context(cycle_id=cycle_id, run_id=run_id):
        yield
