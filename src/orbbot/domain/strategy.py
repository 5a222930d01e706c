"""Deployment sizing and profitability policy.

Everything in this module is pure: no I/O, no clocks, Decimal in and Decimal out.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Literal

MIN_UNIT = Decimal("0.000000001")
_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


@dataclass(frozen=True)
class CycleTier:
    threshold: Decimal
    cycles: int
    label: str


# Ordered from the most aggressive tier down. A risk parameter must be strictly greater
# than a threshold to land in its tier; equality falls through to the next, more
# conservative tier.
DEFAULT_TIERS: tuple[CycleTier, ...] = (
    CycleTier(Decimal("1000"), 20, "ultra_aggressive"),
    CycleTier(Decimal("700"), 30, "maximum"),
    CycleTier(Decimal("600"), 45, "very_aggressive"),
    CycleTier(Decimal("500"), 60, "aggressive"),
    CycleTier(Decimal("400"), 70, "moderate"),
    CycleTier(Decimal("300"), 80, "balanced"),
    CycleTier(Decimal("200"), 100, "conservative"),
)
FLOOR_TIER = CycleTier(_ZERO, 120, "very_conservative")


def tier_for(risk_parameter: Decimal, tiers: tuple[CycleTier, ...] = DEFAULT_TIERS) -> CycleTier:
    for tier in tiers:
        if risk_parameter > tier.threshold:
            return tier
    return FLOOR_TIER


def target_cycles_for(
    risk_parameter: Decimal, tiers: tuple[CycleTier, ...] = DEFAULT_TIERS
) -> int:
    return tier_for(risk_parameter, tiers).cycles


def per_cycle_amount(budget: Decimal, cycles: int, *, min_unit: Decimal = MIN_UNIT) -> Decimal:
    if cycles <= 0:
        raise ValueError("cycles must be > 0")
    if budget <= 0:
        return _ZERO
    return (budget / Decimal(cycles)).quantize(min_unit, rounding=ROUND_DOWN)


def usable_budget(
    wallet_balance: Decimal,
    *,
    mode: Literal["percent", "fixed"],
    pct: Decimal,
    fixed_amount: Decimal,
) -> Decimal:
    """Budget to commit to a new fund, never more than the wallet holds."""
    if wallet_balance <= 0:
        return _ZERO
    if mode == "fixed":
        return min(fixed_amount, wallet_balance)
    return (wallet_balance * pct / _HUNDRED).quantize(MIN_UNIT, rounding=ROUND_DOWN)


@dataclass(frozen=True)
class EVParameters:
    base_reward_per_cycle: Decimal = Decimal("4")
    jackpot_chance: Decimal = Decimal("1") / Decimal("625")
    refining_fee: Decimal = Decimal("0.1")
    principal_return: Decimal = Decimal("0.95")
    negligible_competition: Decimal = Decimal("0.01")
    estimated_competition_multiplier: Decimal = Decimal("10")
    min_expected_value: Decimal = Decimal("0")


@dataclass(frozen=True)
class EVBreakdown:
    share: Decimal
    competition_source: str
    expected_reward_tokens: Decimal
    reward_value_in_base: Decimal
    principal_back: Decimal


@dataclass(frozen=True)
class ProfitabilityResult:
    profitable: bool
    expected_value: Decimal
    cost: Decimal
    expected_returns: Decimal
    reward_price_in_base: Decimal
    breakdown: EVBreakdown | None

    @property
    def roi_pct(self) -> Decimal:
        if self.cost <= 0:
            return _ZERO
        return self.expected_value / self.cost * _HUNDRED


def deployment_share(
    cost: Decimal,
    observed_competition_total: Decimal | None,
    params: EVParameters,
) -> tuple[Decimal, str]:
    if observed_competition_total is None:
        multiplier = params.estimated_competition_multiplier
        return Decimal("1") / (multiplier + 1), "estimate_no_round_data"
    if observed_competition_total < params.negligible_competition:
        multiplier = params.estimated_competition_multiplier
        return Decimal("1") / (multiplier + 1), "estimate_round_just_started"
    return cost / (cost + observed_competition_total), "observed"


def expected_value(
    cost_per_cycle: Decimal,
    risk_parameter: Decimal,
    observed_competition_total: Decimal | None,
    reward_price_in_base: Decimal,
    params: EVParameters | None = None,
) -> ProfitabilityResult:
    """Expected base-currency value of committing ``cost_per_cycle`` to one cycle.

    The caller's share of the pool is ``cost / (cost + competition)``; when competition is
    negligible or unknown an estimated multiplier stands in. Expected reward tokens are the
    base reward plus the jackpot term, both scaled by share, after the refining fee. A
    portion of the principal is assumed to come back. An unavailable price (``<= 0``) is
    never profitable.
    """
    params = params or EVParameters()
    if reward_price_in_base <= 0 or cost_per_cycle <= 0:
        return ProfitabilityResult(
            profitable=False,
            expected_value=_ZERO,
            cost=cost_per_cycle,
            expected_returns=_ZERO,
            reward_price_in_base=reward_price_in_base,
            breakdown=None,
        )

    share, source = deployment_share(cost_per_cycle, observed_competition_total, params)
    base_reward = share * params.base_reward_per_cycle
    jackpot_reward = params.jackpot_chance * share * max(risk_parameter, _ZERO)
    reward_tokens = (base_reward + jackpot_reward) * (Decimal("1") - params.refining_fee)
    reward_value = reward_tokens * reward_price_in_base
    principal_back = cost_per_cycle * params.principal_return
    returns = reward_value + principal_back
    ev = returns - cost_per_cycle
    return ProfitabilityResult(
        profitable=ev >= params.min_expected_value,
        expected_value=ev,
        cost=cost_per_cycle,
        expected_returns=returns,
        reward_price_in_base=reward_price_in_base,
        breakdown=EVBreakdown(
            share=share,
            competition_source=source,
            expected_reward_tokens=reward_tokens,
            reward_value_in_base=reward_value,
            principal_back=principal_back,
        ),
    )


@dataclass(frozen=True)
class RescalePolicy:
    increase_pct: Decimal = Decimal("50")
    decrease_pct: Decimal = Decimal("40")
    min_absolute_change: Decimal = Decimal("100")


def should_rescale(
    sizing_risk_parameter: Decimal,
    current_risk_parameter: Decimal,
    policy: RescalePolicy | None = None,
) -> bool:
    if sizing_risk_parameter <= 0:
        return False
    policy = policy or RescalePolicy()
    delta = current_risk_parameter - sizing_risk_parameter
    change_pct = delta / sizing_risk_parameter * _HUNDRED
    if abs(delta) < policy.min_absolute_change:
        return False
    return change_pct >= policy.increase_pct or change_pct <= -policy.decrease_pct
