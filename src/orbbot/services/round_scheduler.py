from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum
from uuid import uuid4

from orbbot.adapters.game import GameGateway, PriceFeed, PriceUnavailableError
from orbbot.config import Settings
from orbbot.domain.ledger import LedgerEvent, LedgerEventKind
from orbbot.domain.models import FundSnapshot, Operation
from orbbot.domain.strategy import ProfitabilityResult, expected_value
from orbbot.logging_context import with_cycle_context, with_logging_context
from orbbot.observability import (
    CYCLE_SPAN,
    CYCLES_TOTAL,
    DEPLOY_AMOUNT,
    Instrumentation,
    get_instrumentation,
)
from orbbot.services.execution_errors import ExecutionErrorCategory, classify_remote_error
from orbbot.services.fund_lifecycle import FundLifecycleManager
from orbbot.services.ledger_store import LedgerStore, RoundRecord, append_or_log
from orbbot.services.maintenance import MaintenanceService, run_due_tasks
from orbbot.services.retry import RetryPolicy, submit_with_retry

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")


class SchedulerPhase(StrEnum):
    AWAITING_CYCLE = "awaiting_cycle"
    EVALUATING_RISK = "evaluating_risk"
    RESCALE_CHECK = "rescale_check"
    FUND_READY = "fund_ready"
    CHECKPOINT_CATCHUP = "checkpoint_catchup"
    PROFITABILITY_GATE = "profitability_gate"
    DEPLOY = "deploy"


class CycleOutcome(StrEnum):
    DEPLOYED = "deployed"
    ALREADY_DEPLOYED = "already_deployed"
    RISK_BELOW_THRESHOLD = "risk_below_threshold"
    FUND_UNAVAILABLE = "fund_unavailable"
    UNPROFITABLE = "unprofitable"
    DEPLETED = "depleted"
    ABORTED = "aborted"
    ERROR = "error"


@dataclass
class SchedulerState:
    """Mutable loop state, created once per process and threaded through every tick."""

    run_id: str = field(default_factory=lambda: uuid4().hex[:12])
    running: bool = True
    phase: SchedulerPhase = SchedulerPhase.AWAITING_CYCLE
    last_cycle_id: int | None = None
    last_outcome: CycleOutcome | None = None
    deployed_cycles: int = 0
    consecutive_errors: int = 0
    maintenance_last_run: dict[str, float] = field(default_factory=dict)

    def request_shutdown(self) -> None:
        self.running = False


@dataclass(frozen=True)
class TickResult:
    cycle_id: int
    new_cycle: bool
    outcome: CycleOutcome | None
    maintenance_ran: tuple[str, ...] = ()


class RoundScheduler:
    def __init__(
        self,
        *,
        settings: Settings,
        gateway: GameGateway,
        price_feed: PriceFeed,
        ledger: LedgerStore,
        fund_manager: FundLifecycleManager,
        maintenance: MaintenanceService,
        state: SchedulerState | None = None,
        instrumentation: Instrumentation | None = None,
        retry_policy: RetryPolicy | None = None,
        now_fn: Callable[[], datetime] | None = None,
        monotonic_fn: Callable[[], float] = time.monotonic,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.gateway = gateway
        self.price_feed = price_feed
        self.ledger = ledger
        self.fund_manager = fund_manager
        self.maintenance = maintenance
        self.state = state or SchedulerState()
        self.instrumentation = instrumentation or get_instrumentation()
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.submit_max_attempts,
            base_delay_ms=settings.submit_base_delay_ms,
            max_delay_ms=settings.submit_max_delay_ms,
        )
        self._now = now_fn or (lambda: datetime.now(UTC))
        self._monotonic = monotonic_fn
        self._sleep = sleep_fn
        self._tasks = maintenance.tasks()

    def run(self, *, max_ticks: int | None = None) -> int:
        """Poll until shutdown is requested or ``max_ticks`` ticks have run."""
        ticks = 0
        logger.info(
            "scheduler_started",
            extra={
                "extra": {
                    "run_id": self.state.run_id,
                    "dry_run": self.settings.dry_run,
                    "check_interval_ms": self.settings.check_round_interval_ms,
                }
            },
        )
        while self.state.running:
            ticks += 1
            try:
                result = self.tick()
                failed = result.outcome == CycleOutcome.ERROR
            except Exception as exc:  # noqa: BLE001
                logger.exception(
                    "scheduler_tick_failed",
                    extra={"extra": {"tick": ticks, "error_type": type(exc).__name__}},
                )
                failed = True
            self.state.consecutive_errors = self.state.consecutive_errors + 1 if failed else 0

            if max_ticks is not None and ticks >= max_ticks:
                break
            if not self.state.running:
                break
            self._sleep_interruptibly(self._next_sleep_seconds())

        logger.info(
            "scheduler_stopped",
            extra={"extra": {"ticks": ticks, "deployed_cycles": self.state.deployed_cycles}},
        )
        return ticks

    def _next_sleep_seconds(self) -> float:
        errors = self.state.consecutive_errors
        if errors <= 0:
            return self.settings.check_round_interval_ms / 1000
        backoff_ms = self.settings.error_backoff_ms * min(8, 2 ** (errors - 1))
        logger.warning(
            "scheduler_backing_off",
            extra={"extra": {"consecutive_errors": errors, "sleep_seconds": backoff_ms / 1000}},
        )
        return backoff_ms / 1000

    def _sleep_interruptibly(self, seconds: float) -> None:
        sleep_until = self._monotonic() + max(0.0, seconds)
        while self.state.running and self._monotonic() < sleep_until:
            self._sleep(min(1.0, max(0.0, sleep_until - self._monotonic())))

    def tick(self) -> TickResult:
        cycle_id = self.gateway.get_current_cycle_id()
        new_cycle = cycle_id != self.state.last_cycle_id
        outcome: CycleOutcome | None = None
        if new_cycle:
            self.state.last_cycle_id = cycle_id
            outcome = self.run_cycle(cycle_id)
            self.state.last_outcome = outcome
        self.state.phase = SchedulerPhase.AWAITING_CYCLE

        self._sweep_in_flight(cycle_id)
        ran: list[str] = []
        if self.state.running:
            ran = self._run_maintenance()
        return TickResult(
            cycle_id=cycle_id, new_cycle=new_cycle, outcome=outcome, maintenance_ran=tuple(ran)
        )

    def run_cycle(self, cycle_id: int) -> CycleOutcome:
        with with_cycle_context(cycle_id, run_id=self.state.run_id):
            with self.instrumentation.trace(CYCLE_SPAN, attrs={"cycle_id": cycle_id}):
                logger.info("cycle_detected", extra={"extra": {"cycle_id": cycle_id}})
                try:
                    outcome = self._run_cycle_steps(cycle_id)
                except Exception as exc:  # noqa: BLE001
                    outcome = self._outcome_for_error(exc)
            self.instrumentation.counter(CYCLES_TOTAL, attrs={"outcome": outcome.value})
            logger.info(
                "cycle_finished",
                extra={"extra": {"outcome": outcome.value, "phase": self.state.phase.value}},
            )
            return outcome

    def _outcome_for_error(self, exc: Exception) -> CycleOutcome:
        category = classify_remote_error(exc)
        payload = {
            "extra": {
                "phase": self.state.phase.value,
                "category": category.value,
                "error_type": type(exc).__name__,
            }
        }
        if category == ExecutionErrorCategory.INSUFFICIENT_STATE:
            logger.debug("cycle_aborted", extra=payload)
            return CycleOutcome.ABORTED
        if category == ExecutionErrorCategory.PRECONDITION:
            logger.warning("cycle_aborted", extra=payload)
            return CycleOutcome.ABORTED
        logger.exception("cycle_failed", extra=payload)
        return CycleOutcome.ERROR

    def _run_cycle_steps(self, cycle_id: int) -> CycleOutcome:
        self.state.phase = SchedulerPhase.EVALUATING_RISK
        risk_parameter = self.gateway.get_risk_parameter()
        if risk_parameter < self.settings.motherload_threshold:
            logger.info(
                "cycle_skipped_risk_below_threshold",
                extra={
                    "extra": {
                        "risk_parameter": str(risk_parameter),
                        "threshold": str(self.settings.motherload_threshold),
                    }
                },
            )
            return CycleOutcome.RISK_BELOW_THRESHOLD

        if not self._enter(SchedulerPhase.RESCALE_CHECK):
            return CycleOutcome.ABORTED
        fund = self.gateway.get_fund()
        if fund is not None and self.fund_manager.should_rescale(risk_parameter):
            self.fund_manager.close(reason="rescale", cycle_id=cycle_id)
            fund = self.gateway.get_fund()

        if not self._enter(SchedulerPhase.FUND_READY):
            return CycleOutcome.ABORTED
        if fund is None:
            opened = self.fund_manager.open(risk_parameter, cycle_id=cycle_id)
            fund = self.gateway.get_fund() if opened.opened else None
            if fund is None:
                logger.warning(
                    "cycle_aborted_fund_unavailable",
                    extra={"extra": {"reason": opened.reason}},
                )
                return CycleOutcome.FUND_UNAVAILABLE

        if not self._enter(SchedulerPhase.CHECKPOINT_CATCHUP):
            return CycleOutcome.ABORTED
        if not self._catch_up_checkpoints(cycle_id):
            logger.warning("cycle_aborted_checkpoint_incomplete")
            return CycleOutcome.ABORTED

        if not self._enter(SchedulerPhase.PROFITABILITY_GATE):
            return CycleOutcome.ABORTED
        evaluation: ProfitabilityResult | None = None
        competition = self.gateway.get_competition_total(cycle_id)
        if self.settings.enable_production_cost_check:
            evaluation = self._evaluate(fund, risk_parameter, competition)
            if not evaluation.profitable:
                logger.info(
                    "cycle_skipped_unprofitable",
                    extra={
                        "extra": {
                            "expected_value": str(evaluation.expected_value),
                            "cost": str(evaluation.cost),
                            "reward_price_in_base": str(evaluation.reward_price_in_base),
                        }
                    },
                )
                return CycleOutcome.UNPROFITABLE

        if not self._enter(SchedulerPhase.DEPLOY):
            return CycleOutcome.ABORTED
        if fund.depleted:
            logger.warning(
                "fund_depleted",
                extra={
                    "extra": {"balance": str(fund.balance), "per_cycle": str(fund.per_cycle_cost)}
                },
            )
            self.fund_manager.close(reason="depleted", cycle_id=cycle_id)
            return CycleOutcome.DEPLETED
        return self._deploy(cycle_id, fund, risk_parameter, competition, evaluation)

    def _enter(self, phase: SchedulerPhase) -> bool:
        self.state.phase = phase
        if self.state.running:
            return True
        logger.info("cycle_aborted_shutdown_requested", extra={"extra": {"phase": phase.value}})
        return False

    def _catch_up_checkpoints(self, cycle_id: int) -> bool:
        """Advance the miner checkpoint to ``cycle_id``; False if it is still behind."""
        miner = self.gateway.get_miner()
        if miner is None or miner.checkpoint_id >= cycle_id:
            return True
        remaining = cycle_id - miner.checkpoint_id
        batch_size = self.settings.checkpoint_batch_size
        done = 0
        logger.info("checkpoint_catchup_started", extra={"extra": {"behind": remaining}})
        while remaining > 0 and self.state.running:
            batch = min(remaining, batch_size)
            outcome = submit_with_retry(
                lambda n=batch: self.gateway.submit([Operation.checkpoint() for _ in range(n)]),
                label="checkpoint",
                policy=self.retry_policy,
                sleep_fn=self._sleep,
            )
            if outcome.already_applied:
                miner = self.gateway.get_miner()
                remaining = 0 if miner is None else max(0, cycle_id - miner.checkpoint_id)
                break
            done += batch
            remaining -= batch
            if remaining > 0:
                self._sleep_interruptibly(self.settings.checkpoint_batch_delay_ms / 1000)
        logger.info(
            "checkpoint_catchup_finished",
            extra={"extra": {"checkpointed": done, "behind": remaining}},
        )
        return remaining == 0

    def _evaluate(
        self, fund: FundSnapshot, risk_parameter: Decimal, competition: Decimal | None
    ) -> ProfitabilityResult:
        try:
            price = self.price_feed.get_price().price_in_base
        except PriceUnavailableError:
            logger.warning("reward_price_unavailable")
            price = _ZERO
        return expected_value(
            fund.per_cycle_cost,
            risk_parameter,
            competition,
            price,
            self.settings.ev_parameters(),
        )

    def _deploy(
        self,
        cycle_id: int,
        fund: FundSnapshot,
        risk_parameter: Decimal,
        competition: Decimal | None,
        evaluation: ProfitabilityResult | None,
    ) -> CycleOutcome:
        amount = fund.per_cycle_cost
        outcome = submit_with_retry(
            lambda: self.gateway.submit([Operation.deploy(cycle_id)]),
            label="deploy",
            policy=self.retry_policy,
            sleep_fn=self._sleep,
        )
        if outcome.already_applied or outcome.result is None:
            logger.info("cycle_already_deployed")
            return CycleOutcome.ALREADY_DEPLOYED

        result = outcome.result
        now = self._now()
        with with_logging_context(signature=result.signature, operation="deploy"):
            logger.info(
                "cycle_deploy_succeeded",
                extra={"extra": {"amount": str(amount), "fund_balance": str(fund.balance)}},
            )
            append_or_log(
                self.ledger,
                LedgerEvent(
                    kind=LedgerEventKind.DEPLOY,
                    timestamp=now,
                    base_amount=amount,
                    signature=result.signature,
                    cycle_id=cycle_id,
                    notes=f"deployed across {self.settings.squares_per_round} squares "
                    f"(risk parameter {risk_parameter})",
                    network_fee=result.fee,
                    estimated_fee=self.settings.fee_estimate_per_submit,
                ),
                operation="deploy",
            )
            self._record_deploy_side_tables(
                cycle_id, now, amount, fund, risk_parameter, competition, evaluation
            )
        self.state.deployed_cycles += 1
        self.instrumentation.histogram(DEPLOY_AMOUNT, float(amount))
        return CycleOutcome.DEPLOYED

    def _record_deploy_side_tables(
        self,
        cycle_id: int,
        now: datetime,
        amount: Decimal,
        fund: FundSnapshot,
        risk_parameter: Decimal,
        competition: Decimal | None,
        evaluation: ProfitabilityResult | None,
    ) -> None:
        try:
            self.ledger.record_in_flight(cycle_id, amount, now=now)
            self.ledger.record_round(
                RoundRecord(
                    cycle_id=cycle_id,
                    timestamp=now,
                    risk_parameter=risk_parameter,
                    deployed_amount=amount,
                    squares=self.settings.squares_per_round,
                    fund_balance_before=fund.balance,
                    fund_balance_after=fund.balance - amount,
                    competition_total=competition,
                    expected_value=evaluation.expected_value if evaluation is not None else None,
                )
            )
        except Exception:  # noqa: BLE001
            logger.exception(
                "ledger_write_failed",
                extra={"extra": {"operation": "record_in_flight", "cycle_id": cycle_id}},
            )

    def _sweep_in_flight(self, cycle_id: int) -> None:
        try:
            self.ledger.sweep_stale(
                now=self._now(),
                max_age_ms=self.settings.in_flight_max_age_ms,
                current_cycle_id=cycle_id,
                max_cycle_distance=self.settings.in_flight_max_cycle_distance,
            )
        except Exception:  # noqa: BLE001
            logger.exception("ledger_write_failed", extra={"extra": {"operation": "sweep_stale"}})

    def _run_maintenance(self) -> list[str]:
        try:
            fund = self.gateway.get_fund()
        except Exception:  # noqa: BLE001
            logger.exception("maintenance_fund_read_failed")
            return []
        floor = self.settings.min_remaining_cycles_for_maintenance
        if fund is not None and fund.remaining_cycles < floor:
            logger.debug(
                "maintenance_skipped_low_fund",
                extra={"extra": {"remaining_cycles": fund.remaining_cycles, "floor": floor}},
            )
            return []
        return run_due_tasks(
            self._tasks,
            self.state.maintenance_last_run,
            now=self._monotonic(),
            instrumentation=self.instrumentation,
        )
