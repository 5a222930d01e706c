from __future__ import annotations

import logging
from collections.abc import Callable, MutableMapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal

from orbbot.adapters.game import (
    GameGateway,
    InsufficientStateError,
    PreconditionError,
    PriceFeed,
    PriceUnavailableError,
    SwapService,
)
from orbbot.config import Settings
from orbbot.domain.ledger import LedgerEvent, LedgerEventKind, LedgerStatus
from orbbot.domain.models import Operation, SubmitResult, SwapResult
from orbbot.observability import MAINTENANCE_FAILURES_TOTAL, Instrumentation, get_instrumentation
from orbbot.services.ledger_store import BalanceSnapshot, LedgerStore, append_or_log
from orbbot.services.retry import RetryPolicy, SubmitOutcome, submit_with_retry

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")


@dataclass(frozen=True)
class MaintenanceTask:
    name: str
    interval_ms: int
    action: Callable[[], None]
    enabled: bool = True


def run_due_tasks(
    tasks: Sequence[MaintenanceTask],
    last_run: MutableMapping[str, float],
    *,
    now: float,
    instrumentation: Instrumentation | None = None,
) -> list[str]:
    """Run every enabled task whose interval has elapsed, in table order.

    A task's last-run time is stamped before it runs so a failing task waits a full
    interval before the next attempt. One task failing never stops the ones after it.
    """
    instrumentation = instrumentation or get_instrumentation()
    ran: list[str] = []
    for task in tasks:
        if not task.enabled:
            continue
        previous = last_run.get(task.name)
        if previous is not None and (now - previous) * 1000 < task.interval_ms:
            continue
        last_run[task.name] = now
        ran.append(task.name)
        try:
            task.action()
        except Exception as exc:  # noqa: BLE001
            instrumentation.counter(MAINTENANCE_FAILURES_TOTAL, attrs={"task": task.name})
            logger.exception(
                "maintenance_task_failed",
                extra={"extra": {"task": task.name, "error_type": type(exc).__name__}},
            )
    return ran


class MaintenanceService:
    """Claim, stake, swap and snapshot chores run between cycles."""

    def __init__(
        self,
        *,
        settings: Settings,
        gateway: GameGateway,
        swap_service: SwapService,
        price_feed: PriceFeed,
        ledger: LedgerStore,
        retry_policy: RetryPolicy | None = None,
        now_fn: Callable[[], datetime] | None = None,
        sleep_fn: Callable[[float], None] | None = None,
    ) -> None:
        self.settings = settings
        self.gateway = gateway
        self.swap_service = swap_service
        self.price_feed = price_feed
        self.ledger = ledger
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.submit_max_attempts,
            base_delay_ms=settings.submit_base_delay_ms,
            max_delay_ms=settings.submit_max_delay_ms,
        )
        self._now = now_fn or (lambda: datetime.now(UTC))
        self._sleep_fn = sleep_fn

    def tasks(self) -> list[MaintenanceTask]:
        claim_interval = self.settings.check_rewards_interval_ms
        return [
            MaintenanceTask("claim", claim_interval, self.claim_rewards),
            MaintenanceTask(
                "stake", claim_interval * 2, self.stake_excess, self.settings.auto_stake_enabled
            ),
            MaintenanceTask(
                "swap", claim_interval, self.swap_rewards, self.settings.auto_swap_enabled
            ),
            MaintenanceTask(
                "snapshot", self.settings.balance_snapshot_interval_ms, self.capture_snapshot
            ),
        ]

    def _submit(self, label: str, operations: list[Operation]) -> SubmitOutcome[SubmitResult] | None:
        try:
            return submit_with_retry(
                lambda: self.gateway.submit(operations),
                label=label,
                policy=self.retry_policy,
                sleep_fn=self._sleep_fn,
            )
        except InsufficientStateError as exc:
            logger.debug(
                "maintenance_not_ready",
                extra={"extra": {"operation": label, "reason": str(exc)}},
            )
        except PreconditionError as exc:
            logger.warning(
                "maintenance_precondition_failed",
                extra={"extra": {"operation": label, "reason": str(exc)}},
            )
        return None

    def claim_rewards(self) -> None:
        miner = self.gateway.get_miner()
        if miner is not None:
            operations: list[Operation] = []
            claim_base = (
                miner.claimable_base > 0
                and miner.claimable_base >= self.settings.auto_claim_base_threshold
            )
            claim_reward = (
                miner.claimable_reward > 0
                and miner.claimable_reward >= self.settings.auto_claim_reward_threshold
            )
            if claim_base:
                operations.append(Operation.claim_base())
            if claim_reward:
                operations.append(Operation.claim_reward_token())
            if operations:
                outcome = self._submit("claim_mining", operations)
                if outcome is not None:
                    self._record_mining_claim(
                        outcome,
                        base=miner.claimable_base if claim_base else _ZERO,
                        reward=miner.claimable_reward if claim_reward else _ZERO,
                    )
        self._claim_staking_yield()

    def _record_mining_claim(
        self, outcome: SubmitOutcome[SubmitResult], *, base: Decimal, reward: Decimal
    ) -> None:
        now = self._now()
        result = outcome.result
        if result is not None:
            fee_pending = True
            for kind, base_amount, reward_amount in (
                (LedgerEventKind.CLAIM_BASE, base, _ZERO),
                (LedgerEventKind.CLAIM_REWARD_TOKEN, _ZERO, reward),
            ):
                if base_amount <= 0 and reward_amount <= 0:
                    continue
                append_or_log(
                    self.ledger,
                    LedgerEvent(
                        kind=kind,
                        timestamp=now,
                        base_amount=base_amount,
                        reward_token_amount=reward_amount,
                        signature=result.signature,
                        notes="mining rewards",
                        network_fee=result.fee if fee_pending else _ZERO,
                        estimated_fee=self.settings.fee_estimate_per_submit if fee_pending else None,
                    ),
                    operation="claim_mining",
                )
                fee_pending = False
            logger.info(
                "rewards_claimed",
                extra={
                    "extra": {
                        "claimed_base": str(base),
                        "claimed_reward": str(reward),
                        "signature": result.signature,
                    }
                },
            )
        # The claim read fresh reward state, so every older in-flight entry is now visible.
        try:
            self.ledger.resolve_all_in_flight(now=now, reason="claimed")
        except Exception:  # noqa: BLE001
            logger.exception(
                "ledger_write_failed", extra={"extra": {"operation": "resolve_in_flight"}}
            )

    def _claim_staking_yield(self) -> None:
        stake = self.gateway.get_stake()
        if stake is None or stake.balance <= 0:
            return
        amount = self.settings.auto_claim_staking_threshold
        if amount <= 0:
            return
        outcome = self._submit("claim_yield", [Operation.claim_yield(amount)])
        if outcome is None or outcome.result is None:
            return
        append_or_log(
            self.ledger,
            LedgerEvent(
                kind=LedgerEventKind.CLAIM_YIELD,
                timestamp=self._now(),
                reward_token_amount=amount,
                signature=outcome.result.signature,
                notes="staking yield",
                network_fee=outcome.result.fee,
                estimated_fee=self.settings.fee_estimate_per_submit,
            ),
            operation="claim_yield",
        )

    def stake_excess(self) -> None:
        wallet = self.gateway.get_wallet_balances()
        available = wallet.reward_token - self.settings.min_reward_to_keep
        if available < self.settings.stake_threshold or available <= 0:
            return
        outcome = self._submit("stake", [Operation.stake(available)])
        if outcome is None or outcome.result is None:
            return
        append_or_log(
            self.ledger,
            LedgerEvent(
                kind=LedgerEventKind.STAKE,
                timestamp=self._now(),
                reward_token_amount=available,
                signature=outcome.result.signature,
                notes="staked excess reward tokens",
                network_fee=outcome.result.fee,
                estimated_fee=self.settings.fee_estimate_per_submit,
            ),
            operation="stake",
        )
        logger.info("reward_tokens_staked", extra={"extra": {"amount": str(available)}})

    def swap_rewards(self) -> None:
        wallet = self.gateway.get_wallet_balances()
        if wallet.reward_token < self.settings.wallet_swap_threshold:
            return
        amount = max(_ZERO, wallet.reward_token - self.settings.min_reward_to_keep)
        if amount <= 0 or amount < self.settings.min_swap_amount:
            logger.debug(
                "swap_amount_below_minimum",
                extra={"extra": {"wallet_reward": str(wallet.reward_token), "amount": str(amount)}},
            )
            return

        price_usd: Decimal | None = None
        if self.settings.min_reward_price_usd > 0:
            try:
                price_usd = self.price_feed.get_price().price_in_quote
            except PriceUnavailableError:
                logger.warning("swap_skipped_price_unavailable")
                return
            if price_usd < self.settings.min_reward_price_usd:
                logger.warning(
                    "swap_skipped_price_below_minimum",
                    extra={
                        "extra": {
                            "price_usd": str(price_usd),
                            "min_price_usd": str(self.settings.min_reward_price_usd),
                        }
                    },
                )
                return

        try:
            outcome = submit_with_retry(
                lambda: self.swap_service.swap(amount, self.settings.slippage_bps),
                label="swap",
                policy=self.retry_policy,
                sleep_fn=self._sleep_fn,
            )
        except InsufficientStateError as exc:
            logger.debug(
                "maintenance_not_ready",
                extra={"extra": {"operation": "swap", "reason": str(exc)}},
            )
            return
        if outcome.already_applied:
            return
        result = outcome.result or SwapResult(success=False)
        self._record_swap(result, amount, price_usd)

    def _record_swap(self, result: SwapResult, amount: Decimal, price_usd: Decimal | None) -> None:
        succeeded = result.success and result.amount_out > 0
        append_or_log(
            self.ledger,
            LedgerEvent(
                kind=LedgerEventKind.SWAP,
                timestamp=self._now(),
                base_amount=result.amount_out if succeeded else _ZERO,
                reward_token_amount=amount,
                status=LedgerStatus.SUCCESS if succeeded else LedgerStatus.FAILED,
                signature=result.signature,
                notes="swapped reward tokens to base" if succeeded else "swap failed",
                reward_token_price_usd=price_usd,
                network_fee=result.fee,
                estimated_fee=self.settings.fee_estimate_per_submit if result.signature else None,
            ),
            operation="swap",
        )
        if succeeded:
            logger.info(
                "reward_tokens_swapped",
                extra={
                    "extra": {
                        "amount_in": str(amount),
                        "amount_out": str(result.amount_out),
                        "signature": result.signature,
                    }
                },
            )
        else:
            logger.error("reward_token_swap_failed", extra={"extra": {"amount_in": str(amount)}})

    def capture_snapshot(self) -> None:
        now = self._now()
        wallet = self.gateway.get_wallet_balances()
        fund = self.gateway.get_fund()
        miner = self.gateway.get_miner()
        stake = self.gateway.get_stake()
        self.ledger.record_balance_snapshot(
            BalanceSnapshot(
                timestamp=now,
                wallet_base=wallet.base,
                wallet_reward=wallet.reward_token,
                fund_balance=fund.balance if fund is not None else _ZERO,
                claimable_base=miner.claimable_base if miner is not None else _ZERO,
                claimable_reward=miner.claimable_reward if miner is not None else _ZERO,
                staked_reward=stake.balance if stake is not None else _ZERO,
            )
        )
        try:
            quote = self.price_feed.get_price()
        except PriceUnavailableError:
            logger.debug("snapshot_price_unavailable")
        else:
            if quote.price_in_base > 0 and quote.price_in_quote > 0:
                self.ledger.record_price(quote, now=now)
        logger.debug("balance_snapshot_captured", extra={"extra": {"wallet_base": str(wallet.base)}})
