from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from orbbot.adapters.game import GameGateway, PriceFeed, PriceUnavailableError
from orbbot.domain.pnl import PnLReport, WalletReconciliation, reconcile_wallet, summarize
from orbbot.services.ledger_store import FeeReview, LedgerStore

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")


@dataclass(frozen=True)
class ProfitOverview:
    report: PnLReport
    reconciliation: WalletReconciliation | None
    fee_review: FeeReview
    reward_price_in_base: Decimal
    price_source: str


class PnLService:
    """Gathers ledger aggregates and live balances for the pure profit calculator."""

    def __init__(
        self,
        *,
        ledger: LedgerStore,
        gateway: GameGateway,
        price_feed: PriceFeed,
        reconciliation_tolerance: Decimal = Decimal("0.1"),
        fee_discrepancy_tolerance: Decimal = Decimal("0.001"),
    ) -> None:
        self.ledger = ledger
        self.gateway = gateway
        self.price_feed = price_feed
        self.reconciliation_tolerance = reconciliation_tolerance
        self.fee_discrepancy_tolerance = fee_discrepancy_tolerance

    def reward_price(self) -> tuple[Decimal, str]:
        try:
            return self.price_feed.get_price().price_in_base, "live"
        except PriceUnavailableError:
            cached = self.ledger.latest_price()
            if cached is not None:
                logger.warning("reward_price_using_history")
                return cached.price_in_base, "history"
            logger.warning("reward_price_unavailable")
            return _ZERO, "unavailable"

    def overview(self) -> ProfitOverview:
        totals = self.ledger.aggregate_totals()
        in_flight_total, in_flight_count = self.ledger.in_flight_total()
        fund = self.gateway.get_fund()
        miner = self.gateway.get_miner()
        wallet = self.gateway.get_wallet_balances()
        price, source = self.reward_price()
        baseline_event = self.ledger.get_baseline()
        baseline = baseline_event.base_amount if baseline_event is not None else None
        earliest = self.ledger.earliest_balance_snapshot()

        report = summarize(
            totals,
            in_flight_total,
            fund.balance if fund is not None else _ZERO,
            miner,
            wallet,
            price,
            baseline,
            earliest_snapshot_value=earliest.base_value if earliest is not None else None,
            in_flight_count=in_flight_count,
        )
        reconciliation = (
            reconcile_wallet(
                totals, wallet.base, baseline, tolerance=self.reconciliation_tolerance
            )
            if baseline is not None
            else None
        )
        if reconciliation is not None and not reconciliation.reconciled:
            logger.warning(
                "wallet_reconciliation_mismatch",
                extra={
                    "extra": {
                        "expected": str(reconciliation.expected_wallet_balance),
                        "current": str(reconciliation.current_wallet_balance),
                        "difference": str(reconciliation.difference),
                    }
                },
            )
        return ProfitOverview(
            report=report,
            reconciliation=reconciliation,
            fee_review=self.ledger.fee_review(tolerance=self.fee_discrepancy_tolerance),
            reward_price_in_base=price,
            price_source=source,
        )

    def current_holdings(self) -> Decimal:
        """Base-currency value a baseline would be taken from: wallet, fund and claimable."""
        wallet = self.gateway.get_wallet_balances()
        fund = self.gateway.get_fund()
        miner = self.gateway.get_miner()
        return (
            wallet.base
            + (fund.balance if fund is not None else _ZERO)
            + (miner.claimable_base if miner is not None else _ZERO)
        )
