from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

import pytest

from orbbot.adapters.game import (
    AlreadyAppliedError,
    InsufficientStateError,
    PreconditionError,
    TransientRemoteError,
)
from orbbot.services.retry import (
    RetryPolicy,
    parse_retry_after_seconds,
    retry_with_backoff,
    submit_with_retry,
)


class _RateError(Exception):
    pass


def test_parse_retry_after_seconds_supports_numbers_and_http_dates() -> None:
    assert parse_retry_after_seconds("3") == 3.0
    assert parse_retry_after_seconds("") is None
    assert parse_retry_after_seconds("-2") is None
    assert parse_retry_after_seconds("soon") is None
    dt = datetime.now(UTC) + timedelta(seconds=2)
    value = parse_retry_after_seconds(dt.strftime("%a, %d %b %Y %H:%M:%S GMT"))
    assert value is not None
    assert 0 <= value <= 2.5


def test_retry_with_backoff_honors_max_total_sleep() -> None:
    calls = {"n": 0}

    def _fn() -> None:
        calls["n"] += 1
        raise _RateError("x")

    with pytest.raises(_RateError):
        retry_with_backoff(
            _fn,
            max_attempts=5,
            base_delay_ms=100,
            max_delay_ms=1000,
            jitter_seed=1,
            retry_on_exceptions=(_RateError,),
            sleep_fn=lambda _x: None,
            max_total_sleep_seconds=0.15,
        )
    assert calls["n"] == 2


def test_retry_after_header_takes_priority() -> None:
    calls = {"n": 0}
    slept: list[float] = []

    def _fn() -> str:
        calls["n"] += 1
        if calls["n"] == 1:
            raise _RateError("429")
        return "ok"

    out = retry_with_backoff(
        _fn,
        max_attempts=3,
        base_delay_ms=100,
        max_delay_ms=5000,
        jitter_seed=3,
        retry_on_exceptions=(_RateError,),
        sleep_fn=slept.append,
        retry_after_getter=lambda _exc: "2",
    )

    assert out == "ok"
    assert slept == [2.0]


def test_jitter_is_deterministic_for_a_seed() -> None:
    def _fail() -> None:
        raise _RateError("x")

    def _run() -> list[float]:
        slept: list[float] = []
        with pytest.raises(_RateError):
            retry_with_backoff(
                _fail,
                max_attempts=4,
                base_delay_ms=100,
                max_delay_ms=1000,
                jitter_seed=11,
                retry_on_exceptions=(_RateError,),
                sleep_fn=slept.append,
            )
        return slept

    first = _run()
    assert first == _run()
    assert len(first) == 3
    assert all(0.05 <= delay <= 1.5 for delay in first)


def test_invalid_attempts_rejected() -> None:
    with pytest.raises(ValueError):
        retry_with_backoff(
            lambda: None, max_attempts=0, base_delay_ms=1, max_delay_ms=1, jitter_seed=1
        )


def test_submit_with_retry_retries_transient_then_succeeds() -> None:
    calls = {"n": 0}
    slept: list[float] = []

    def _submit() -> str:
        calls["n"] += 1
        if calls["n"] < 3:
            raise TransientRemoteError("blockhash expired")
        return "sig"

    outcome = submit_with_retry(
        _submit,
        label="deploy",
        policy=RetryPolicy(max_attempts=3, base_delay_ms=10, max_delay_ms=20),
        sleep_fn=slept.append,
    )

    assert outcome.result == "sig"
    assert outcome.already_applied is False
    assert calls["n"] == 3
    assert len(slept) == 2


def test_submit_with_retry_treats_already_applied_as_success(caplog) -> None:
    caplog.set_level(logging.INFO)
    calls = {"n": 0}

    def _submit() -> str:
        calls["n"] += 1
        raise AlreadyAppliedError("already deployed in cycle 9")

    outcome = submit_with_retry(
        _submit, label="deploy", policy=RetryPolicy(), sleep_fn=lambda _x: None
    )

    assert outcome.result is None
    assert outcome.already_applied is True
    assert calls["n"] == 1
    assert "remote_submit_already_applied" in caplog.text


def test_submit_with_retry_recognizes_already_applied_by_message() -> None:
    def _submit() -> str:
        raise RuntimeError("custom program error: Duplicate deployment")

    outcome = submit_with_retry(_submit, label="deploy", policy=RetryPolicy())

    assert outcome.already_applied is True


@pytest.mark.parametrize("exc", [InsufficientStateError("nothing to claim"), PreconditionError("x")])
def test_submit_with_retry_does_not_retry_non_transient(exc: Exception) -> None:
    calls = {"n": 0}

    def _submit() -> str:
        calls["n"] += 1
        raise exc

    with pytest.raises(type(exc)):
        submit_with_retry(_submit, label="claim", policy=RetryPolicy(), sleep_fn=lambda _x: None)
    assert calls["n"] == 1


def test_submit_with_retry_gives_up_after_max_attempts() -> None:
    calls = {"n": 0}

    def _submit() -> str:
        calls["n"] += 1
        raise TimeoutError("confirmation timed out")

    with pytest.raises(TimeoutError):
        submit_with_retry(
            _submit,
            label="open_fund",
            policy=RetryPolicy(max_attempts=2, base_delay_ms=0, max_delay_ms=0),
            sleep_fn=lambda _x: None,
        )
    assert calls["n"] == 2
