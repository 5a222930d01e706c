from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal

from orbbot.adapters.game import GameGateway
from orbbot.config import Settings
from orbbot.domain.ledger import LedgerEvent, LedgerEventKind
from orbbot.domain.models import FundSnapshot, Operation, SizingState
from orbbot.domain.strategy import (
    per_cycle_amount,
    should_rescale,
    target_cycles_for,
    tier_for,
    usable_budget,
)
from orbbot.services.ledger_store import LedgerStore, append_or_log
from orbbot.services.process_state import ProcessStateStore
from orbbot.services.retry import RetryPolicy, submit_with_retry

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")


@dataclass(frozen=True)
class FundOpenResult:
    opened: bool
    reason: str | None = None
    deposit: Decimal = _ZERO
    per_cycle: Decimal = _ZERO
    target_cycles: int = 0
    signature: str | None = None


@dataclass(frozen=True)
class FundCloseResult:
    closed: bool
    returned: Decimal = _ZERO
    reason: str | None = None
    signature: str | None = None


class FundLifecycleManager:
    """Opens, closes and rescales the pooled automation fund.

    Sizing memory lives in the process-state file; every open and close is mirrored in the
    ledger as ``fund_open`` / ``fund_close`` so that capital deployed stays exact.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        gateway: GameGateway,
        ledger: LedgerStore,
        process_state: ProcessStateStore,
        retry_policy: RetryPolicy | None = None,
        now_fn: Callable[[], datetime] | None = None,
        sleep_fn: Callable[[float], None] | None = None,
    ) -> None:
        self.settings = settings
        self.gateway = gateway
        self.ledger = ledger
        self.process_state = process_state
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.submit_max_attempts,
            base_delay_ms=settings.submit_base_delay_ms,
            max_delay_ms=settings.submit_max_delay_ms,
        )
        self._now = now_fn or (lambda: datetime.now(UTC))
        self._sleep_fn = sleep_fn
        self.sizing = process_state.load()

    def open(self, risk_parameter: Decimal, *, cycle_id: int | None = None) -> FundOpenResult:
        wallet = self.gateway.get_wallet_balances()
        budget = usable_budget(
            wallet.base,
            mode=self.settings.budget_mode,
            pct=self.settings.initial_automation_budget_pct,
            fixed_amount=self.settings.fixed_automation_budget,
        )
        if budget < self.settings.min_automation_budget:
            logger.warning(
                "fund_open_budget_below_minimum",
                extra={
                    "extra": {
                        "wallet_base": str(wallet.base),
                        "usable_budget": str(budget),
                        "min_budget": str(self.settings.min_automation_budget),
                    }
                },
            )
            return FundOpenResult(opened=False, reason="budget_below_minimum", deposit=budget)

        tier = tier_for(risk_parameter)
        cycles = target_cycles_for(risk_parameter)
        squares = self.settings.squares_per_round
        amount_per_square = per_cycle_amount(budget, cycles * squares)
        per_cycle = amount_per_square * squares
        if amount_per_square <= 0:
            return FundOpenResult(opened=False, reason="per_cycle_below_minimum_unit", deposit=budget)

        operation = Operation.open_fund(
            deposit=budget,
            amount_per_square=amount_per_square,
            squares=squares,
            fee_per_execution=self.settings.fee_per_execution,
        )
        outcome = submit_with_retry(
            lambda: self.gateway.submit([operation]),
            label="open_fund",
            policy=self.retry_policy,
            sleep_fn=self._sleep_fn,
        )
        if outcome.already_applied or outcome.result is None:
            existing = self.gateway.get_fund()
            self.adopt_existing_fund(existing)
            self._save_sizing(risk_parameter, cycle_id)
            return FundOpenResult(
                opened=existing is not None,
                reason="already_open",
                deposit=budget,
                per_cycle=per_cycle,
                target_cycles=cycles,
            )

        result = outcome.result
        self._save_sizing(risk_parameter, cycle_id)
        append_or_log(
            self.ledger,
            LedgerEvent(
                kind=LedgerEventKind.FUND_OPEN,
                timestamp=self._now(),
                base_amount=budget,
                signature=result.signature,
                cycle_id=cycle_id,
                notes=(
                    f"{cycles} cycles @ {per_cycle}/cycle, tier {tier.label}, "
                    f"risk parameter {risk_parameter}"
                ),
                network_fee=result.fee,
                estimated_fee=self.settings.fee_estimate_per_submit,
            ),
            operation="open_fund",
        )
        logger.info(
            "fund_opened",
            extra={
                "extra": {
                    "deposit": str(budget),
                    "per_cycle": str(per_cycle),
                    "target_cycles": cycles,
                    "tier": tier.label,
                    "risk_parameter": str(risk_parameter),
                    "signature": result.signature,
                }
            },
        )
        return FundOpenResult(
            opened=True,
            deposit=budget,
            per_cycle=per_cycle,
            target_cycles=cycles,
            signature=result.signature,
        )

    def close(self, *, reason: str = "manual", cycle_id: int | None = None) -> FundCloseResult:
        fund = self.gateway.get_fund()
        if fund is None:
            self._clear_sizing()
            return FundCloseResult(closed=False, reason="no_fund")

        # Closure is irreversible; the balance must be captured before submitting it.
        returned = fund.balance
        outcome = submit_with_retry(
            lambda: self.gateway.submit([Operation.close_fund()]),
            label="close_fund",
            policy=self.retry_policy,
            sleep_fn=self._sleep_fn,
        )
        result = outcome.result
        append_or_log(
            self.ledger,
            LedgerEvent(
                kind=LedgerEventKind.FUND_CLOSE,
                timestamp=self._now(),
                base_amount=returned,
                signature=result.signature if result is not None else None,
                cycle_id=cycle_id,
                notes=f"closed ({reason}), returned {returned}",
                network_fee=result.fee if result is not None else _ZERO,
                estimated_fee=self.settings.fee_estimate_per_submit if result is not None else None,
            ),
            operation="close_fund",
        )
        self._clear_sizing()
        logger.info(
            "fund_closed",
            extra={
                "extra": {
                    "returned": str(returned),
                    "reason": reason,
                    "already_applied": outcome.already_applied,
                }
            },
        )
        return FundCloseResult(
            closed=True,
            returned=returned,
            reason=reason,
            signature=result.signature if result is not None else None,
        )

    def should_rescale(self, current_risk_parameter: Decimal) -> bool:
        decision = should_rescale(
            self.sizing.sizing_risk_parameter,
            current_risk_parameter,
            self.settings.rescale_policy(),
        )
        if decision:
            logger.info(
                "fund_rescale_triggered",
                extra={
                    "extra": {
                        "sized_for": str(self.sizing.sizing_risk_parameter),
                        "current": str(current_risk_parameter),
                    }
                },
            )
        return decision

    def adopt_existing_fund(self, fund: FundSnapshot | None = None) -> bool:
        """Book a fund the ledger does not know about, e.g. after a ledger reset."""
        fund = fund if fund is not None else self.gateway.get_fund()
        if fund is None:
            return False
        totals = self.ledger.aggregate_totals()
        if totals.deployed > 0:
            return False
        recorded = append_or_log(
            self.ledger,
            LedgerEvent(
                kind=LedgerEventKind.FUND_OPEN,
                timestamp=self._now(),
                base_amount=fund.balance,
                notes="adopted existing fund",
            ),
            operation="adopt_fund",
        )
        if recorded:
            logger.warning(
                "fund_adopted",
                extra={"extra": {"balance": str(fund.balance)}},
            )
        return recorded

    def _save_sizing(self, risk_parameter: Decimal, cycle_id: int | None) -> None:
        self.sizing = SizingState(
            sizing_risk_parameter=risk_parameter,
            sizing_timestamp=self._now(),
            sizing_cycle_id=cycle_id,
        )
        try:
            self.process_state.save(self.sizing)
        except OSError:
            logger.exception("process_state_write_failed")

    def _clear_sizing(self) -> None:
        self.sizing = SizingState()
        try:
            self.process_state.clear()
        except OSError:
            logger.exception("process_state_write_failed")
