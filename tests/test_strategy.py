from __future__ import annotations

from decimal import Decimal

import pytest
from hypothesis import given
from hypothesis import strategies as st

from orbbot.domain.strategy import (
    DEFAULT_TIERS,
    EVParameters,
    RescalePolicy,
    expected_value,
    per_cycle_amount,
    should_rescale,
    target_cycles_for,
    tier_for,
    usable_budget,
)

risk_values = st.decimals(
    min_value=Decimal("0"), max_value=Decimal("5000"), places=2, allow_nan=False
)


@pytest.mark.parametrize(
    ("risk", "cycles"),
    [
        (Decimal("1500"), 20),
        (Decimal("1000"), 30),
        (Decimal("700.01"), 30),
        (Decimal("650"), 45),
        (Decimal("550"), 60),
        (Decimal("450"), 70),
        (Decimal("350"), 80),
        (Decimal("250"), 100),
        (Decimal("200"), 120),
        (Decimal("0"), 120),
    ],
)
def test_tier_table_uses_strictly_greater_thresholds(risk: Decimal, cycles: int) -> None:
    assert target_cycles_for(risk) == cycles


@given(low=risk_values, high=risk_values)
def test_target_cycles_never_increase_with_risk(low: Decimal, high: Decimal) -> None:
    if low > high:
        low, high = high, low
    assert target_cycles_for(high) <= target_cycles_for(low)


def test_tiers_are_ordered_from_most_aggressive() -> None:
    thresholds = [tier.threshold for tier in DEFAULT_TIERS]
    assert thresholds == sorted(thresholds, reverse=True)
    assert tier_for(Decimal("250")).label == "conservative"


def test_per_cycle_amount_quantizes_down_to_minimum_unit() -> None:
    assert per_cycle_amount(Decimal("1"), 3) == Decimal("0.333333333")
    assert per_cycle_amount(Decimal("0"), 10) == Decimal("0")
    with pytest.raises(ValueError):
        per_cycle_amount(Decimal("1"), 0)


@given(
    budget=st.decimals(min_value=Decimal("0.000001"), max_value=Decimal("1000"), places=6),
    cycles=st.integers(min_value=1, max_value=5000),
)
def test_per_cycle_amount_never_overspends_budget(budget: Decimal, cycles: int) -> None:
    assert per_cycle_amount(budget, cycles) * cycles <= budget


def test_usable_budget_modes() -> None:
    assert usable_budget(
        Decimal("2"), mode="percent", pct=Decimal("90"), fixed_amount=Decimal("0")
    ) == Decimal("1.8")
    assert usable_budget(
        Decimal("2"), mode="fixed", pct=Decimal("90"), fixed_amount=Decimal("0.5")
    ) == Decimal("0.5")
    assert usable_budget(
        Decimal("0.3"), mode="fixed", pct=Decimal("90"), fixed_amount=Decimal("0.5")
    ) == Decimal("0.3")
    assert usable_budget(
        Decimal("0"), mode="percent", pct=Decimal("90"), fixed_amount=Decimal("0")
    ) == Decimal("0")


def test_expected_value_worked_example_without_jackpot() -> None:
    result = expected_value(Decimal("0.01"), Decimal("0"), Decimal("0.09"), Decimal("0.02"))

    assert result.profitable is True
    assert result.breakdown is not None
    assert result.breakdown.share == Decimal("0.1")
    assert result.breakdown.expected_reward_tokens == Decimal("0.36")
    assert result.expected_returns == Decimal("0.0167")
    assert result.expected_value == Decimal("0.0067")


def test_expected_value_includes_jackpot_term() -> None:
    result = expected_value(Decimal("0.01"), Decimal("250"), Decimal("0.09"), Decimal("0.02"))

    assert result.profitable is True
    assert result.expected_value == Decimal("0.00742")


def test_expected_value_estimates_share_without_round_data() -> None:
    result = expected_value(Decimal("0.01"), Decimal("0"), None, Decimal("0.02"))

    assert result.breakdown is not None
    assert result.breakdown.share == Decimal("1") / Decimal("11")
    assert result.breakdown.competition_source == "estimate_no_round_data"


def test_expected_value_uses_observed_competition() -> None:
    result = expected_value(Decimal("1"), Decimal("0"), Decimal("3"), Decimal("0.2"))

    assert result.breakdown is not None
    assert result.breakdown.share == Decimal("0.25")
    assert result.breakdown.competition_source == "observed"

    negligible = expected_value(Decimal("1"), Decimal("0"), Decimal("0.001"), Decimal("0.2"))
    assert negligible.breakdown is not None
    assert negligible.breakdown.competition_source == "estimate_round_just_started"


@pytest.mark.parametrize("price", [Decimal("0"), Decimal("-1")])
def test_unavailable_price_is_never_profitable(price: Decimal) -> None:
    result = expected_value(Decimal("0.1"), Decimal("5000"), None, price)

    assert result.profitable is False
    assert result.expected_value == Decimal("0")
    assert result.roi_pct == Decimal("0")


def test_min_expected_value_raises_the_bar() -> None:
    params = EVParameters(min_expected_value=Decimal("0.01"))

    result = expected_value(Decimal("0.01"), Decimal("0"), Decimal("0.09"), Decimal("0.02"), params)

    assert result.profitable is False


@pytest.mark.parametrize(
    ("sized", "current", "expected"),
    [
        (Decimal("200"), Decimal("300"), True),
        (Decimal("200"), Decimal("299"), False),
        (Decimal("500"), Decimal("300"), True),
        (Decimal("500"), Decimal("301"), False),
        (Decimal("100"), Decimal("160"), False),
        (Decimal("0"), Decimal("900"), False),
    ],
)
def test_should_rescale_thresholds(sized: Decimal, current: Decimal, expected: bool) -> None:
    assert should_rescale(sized, current, RescalePolicy()) is expected
