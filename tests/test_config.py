from __future__ import annotations

from decimal import Decimal

import pytest
from pydantic import ValidationError

from orbbot.config import Settings


def test_defaults_are_dry_run_with_documented_knobs() -> None:
    settings = Settings()

    assert settings.dry_run is True
    assert settings.check_round_interval_ms == 10_000
    assert settings.motherload_threshold == Decimal("50")
    assert settings.initial_automation_budget_pct == Decimal("90")
    assert settings.checkpoint_batch_size == 10
    assert settings.in_flight_max_age_ms == 600_000
    assert settings.in_flight_max_cycle_distance == 3
    assert settings.auto_stake_enabled is False
    assert settings.reconciliation_tolerance == Decimal("0.1")


def test_env_aliases_are_read(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUTO_CLAIM_SOL_THRESHOLD", "0.25")
    monkeypatch.setenv("MIN_ORB_TO_KEEP", "12")
    monkeypatch.setenv("BUDGET_MODE", "fixed")
    monkeypatch.setenv("FIXED_AUTOMATION_BUDGET", "0.7")

    settings = Settings()

    assert settings.auto_claim_base_threshold == Decimal("0.25")
    assert settings.min_reward_to_keep == Decimal("12")
    assert settings.budget_mode == "fixed"
    assert settings.fixed_automation_budget == Decimal("0.7")


@pytest.mark.parametrize(
    ("env", "value", "needle"),
    [
        ("CHECK_ROUND_INTERVAL_MS", "-1", "CHECK_ROUND_INTERVAL_MS"),
        ("INITIAL_AUTOMATION_BUDGET_PCT", "0", "INITIAL_AUTOMATION_BUDGET_PCT"),
        ("INITIAL_AUTOMATION_BUDGET_PCT", "150", "INITIAL_AUTOMATION_BUDGET_PCT"),
        ("CHECKPOINT_BATCH_SIZE", "0", "CHECKPOINT_BATCH_SIZE"),
        ("SLIPPAGE_BPS", "20000", "SLIPPAGE_BPS"),
        ("MIN_AUTOMATION_BUDGET", "-0.5", "MIN_AUTOMATION_BUDGET"),
    ],
)
def test_invalid_values_are_rejected_with_env_name(
    monkeypatch: pytest.MonkeyPatch, env: str, value: str, needle: str
) -> None:
    monkeypatch.setenv(env, value)

    with pytest.raises(ValidationError, match=needle):
        Settings()


def test_live_mode_requires_adapter_factory(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DRY_RUN", "false")

    with pytest.raises(ValidationError, match="GAME_ADAPTER_FACTORY"):
        Settings()

    monkeypatch.setenv("GAME_ADAPTER_FACTORY", "mygame.adapters:build")
    assert Settings().dry_run is False


def test_submit_delay_bounds_must_be_ordered(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SUBMIT_BASE_DELAY_MS", "5000")
    monkeypatch.setenv("SUBMIT_MAX_DELAY_MS", "1000")

    with pytest.raises(ValidationError, match="SUBMIT_MAX_DELAY_MS"):
        Settings()


def test_private_key_is_secret(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PRIVATE_KEY", "5Jx9secretvalue")

    settings = Settings()

    assert settings.private_key is not None
    assert "5Jx9secretvalue" not in repr(settings)
    assert settings.private_key.get_secret_value() == "5Jx9secretvalue"


def test_policy_helpers_mirror_settings() -> None:
    settings = Settings(RESCALE_INCREASE_PCT=60, ESTIMATED_COMPETITION_MULTIPLIER=5)

    assert settings.rescale_policy().increase_pct == Decimal("60")
    assert settings.rescale_policy().decrease_pct == Decimal("40")
    assert settings.ev_parameters().estimated_competition_multiplier == Decimal("5")
