from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from orbbot.domain.ledger import LedgerTotals
from orbbot.domain.models import MinerState, WalletBalances

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


@dataclass(frozen=True)
class PnLReport:
    deployed: Decimal
    claimed_base: Decimal
    swapped_base: Decimal
    fund_balance: Decimal
    claimable_base: Decimal
    current_value: Decimal
    net_profit: Decimal
    roi_pct: Decimal
    in_flight_total: Decimal
    in_flight_count: int
    reward_token_balance: Decimal
    reward_token_value_in_base: Decimal
    holdings_value: Decimal
    starting_value: Decimal | None
    has_baseline: bool
    baseline_profit: Decimal | None
    baseline_roi_pct: Decimal | None


def summarize(
    totals: LedgerTotals,
    in_flight_total: Decimal,
    fund_balance: Decimal,
    claimable: MinerState | None,
    wallet: WalletBalances,
    reward_price_in_base: Decimal,
    baseline: Decimal | None,
    *,
    earliest_snapshot_value: Decimal | None = None,
    in_flight_count: int = 0,
) -> PnLReport:
    """Turn ledger aggregates and live balances into a profit/loss summary.

    Current value counts claimed and swapped base currency plus what is still in the fund
    and claimable. In-flight capital is reported but never added: it already left the fund
    and its reward is not yet claimable. Reward tokens only count toward profit once
    swapped; their mark-to-market value is reported separately.
    """
    claimable_base = claimable.claimable_base if claimable is not None else _ZERO
    claimable_reward = claimable.claimable_reward if claimable is not None else _ZERO

    current_value = totals.claimed_base + totals.swapped_base + fund_balance + claimable_base
    net_profit = current_value - totals.deployed
    roi_pct = net_profit / totals.deployed * _HUNDRED if totals.deployed > 0 else _ZERO

    reward_balance = (
        totals.claimed_reward
        + totals.claimed_yield
        - totals.swapped_reward
        - totals.staked
        + totals.unstaked
        + claimable_reward
    )
    reward_balance = max(reward_balance, _ZERO)
    price = max(reward_price_in_base, _ZERO)

    holdings = wallet.base + fund_balance + claimable_base
    has_baseline = baseline is not None and baseline > 0
    starting = baseline if has_baseline else earliest_snapshot_value
    baseline_profit: Decimal | None = None
    baseline_roi: Decimal | None = None
    if starting is not None:
        baseline_profit = holdings - starting
        baseline_roi = baseline_profit / starting * _HUNDRED if starting > 0 else _ZERO

    return PnLReport(
        deployed=totals.deployed,
        claimed_base=totals.claimed_base,
        swapped_base=totals.swapped_base,
        fund_balance=fund_balance,
        claimable_base=claimable_base,
        current_value=current_value,
        net_profit=net_profit,
        roi_pct=roi_pct,
        in_flight_total=in_flight_total,
        in_flight_count=in_flight_count,
        reward_token_balance=reward_balance,
        reward_token_value_in_base=reward_balance * price,
        holdings_value=holdings,
        starting_value=starting,
        has_baseline=has_baseline,
        baseline_profit=baseline_profit,
        baseline_roi_pct=baseline_roi,
    )


@dataclass(frozen=True)
class WalletReconciliation:
    current_wallet_balance: Decimal
    expected_wallet_balance: Decimal
    difference: Decimal
    reconciled: bool
    reasons: list[str] = field(default_factory=list)


def reconcile_wallet(
    totals: LedgerTotals,
    current_wallet_base: Decimal,
    baseline: Decimal,
    *,
    tolerance: Decimal = Decimal("0.1"),
) -> WalletReconciliation:
    expected = (
        baseline - totals.funded + totals.returned + totals.claimed_base + totals.swapped_base
    )
    difference = current_wallet_base - expected
    reconciled = abs(difference) < tolerance
    reasons: list[str] = []
    if not reconciled:
        if difference > 0:
            reasons.append(f"wallet holds {difference:.4f} more than the ledger explains")
            reasons.append("possible causes: unrecorded events, manual deposits")
        else:
            reasons.append(f"wallet holds {-difference:.4f} less than the ledger explains")
            reasons.append("possible causes: unrecorded fees, failed submissions, withdrawals")
    return WalletReconciliation(
        current_wallet_balance=current_wallet_base,
        expected_wallet_balance=expected,
        difference=difference,
        reconciled=reconciled,
        reasons=reasons,
    )
