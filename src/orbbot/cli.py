from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation

from pydantic import ValidationError

from orbbot.adapters.factory import GameAdapters, build_adapters
from orbbot.adapters.game import ConfigurationError
from orbbot.config import Settings
from orbbot.logging_utils import setup_logging
from orbbot.observability import configure_from_settings
from orbbot.security.redaction import redact_data, sanitize_text
from orbbot.services.fund_lifecycle import FundLifecycleManager
from orbbot.services.ledger_store import LedgerStore
from orbbot.services.maintenance import MaintenanceService
from orbbot.services.pnl_service import PnLService
from orbbot.services.process_lock import LockHeldError, read_lock_owner, single_instance_lock
from orbbot.services.process_state import ProcessStateStore
from orbbot.services.round_scheduler import RoundScheduler, SchedulerState

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    adapters: GameAdapters
    ledger: LedgerStore
    process_state: ProcessStateStore
    fund_manager: FundLifecycleManager

    def close(self) -> None:
        self.adapters.close()
        _close_best_effort(self.ledger, "ledger")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="orbbot",
        description="Automated deployment bot for the cycle-based reward game.",
        epilog=(
            "All settings come from environment variables (or a .env file). "
            "DRY_RUN=true runs against an in-memory simulator."
        ),
    )
    parser.add_argument(
        "--env-file",
        default=None,
        help="Optional dotenv file read in addition to the process environment",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run the round scheduler")
    run_parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    run_parser.add_argument(
        "--max-ticks",
        type=int,
        default=None,
        help="Stop after this many ticks (default: run until SIGINT/SIGTERM)",
    )

    pnl_parser = subparsers.add_parser("pnl", help="Profit/loss report with reconciliation")
    pnl_parser.add_argument("--json", action="store_true", help="Emit JSON only")

    baseline_parser = subparsers.add_parser(
        "set-baseline", help="Record the starting portfolio value (first call wins)"
    )
    baseline_parser.add_argument(
        "--amount",
        default=None,
        help="Baseline in base currency (default: wallet + fund + claimable right now)",
    )

    subparsers.add_parser("status", help="Show fund, miner, sizing and in-flight state")
    subparsers.add_parser("close-fund", help="Close the automation fund and book the return")

    history_parser = subparsers.add_parser("history", help="Daily summaries and recent rounds")
    history_parser.add_argument("--days", type=int, default=7, help="Days to summarize")
    history_parser.add_argument("--rounds", type=int, default=10, help="Recent rounds to list")

    args = parser.parse_args(argv)
    try:
        settings = _load_settings(args.env_file)
    except (ValidationError, ConfigurationError) as exc:
        print(f"orbbot: invalid configuration: {sanitize_text(str(exc))}", file=sys.stderr)
        return 2

    setup_logging(settings.log_level)
    configure_from_settings(settings)
    logger.info(
        "runtime_prepared",
        extra={
            "extra": {
                "command": args.command,
                "dry_run": settings.dry_run,
                "db_path": settings.state_db_path,
                "pid": os.getpid(),
            }
        },
    )

    try:
        if args.command == "run":
            max_ticks = 1 if args.once else args.max_ticks
            return run_scheduler(settings, max_ticks=max_ticks)
        if args.command == "pnl":
            return run_pnl(settings, json_output=args.json)
        if args.command == "set-baseline":
            return run_set_baseline(settings, amount=args.amount)
        if args.command == "status":
            return run_status(settings)
        if args.command == "close-fund":
            return run_close_fund(settings)
        if args.command == "history":
            return run_history(settings, days=args.days, rounds=args.rounds)
    except ConfigurationError as exc:
        print(f"orbbot: {sanitize_text(str(exc))}", file=sys.stderr)
        return 2
    except LockHeldError as exc:
        print(str(exc), file=sys.stderr)
        return 2

    parser.error(f"unknown command {args.command!r}")
    return 2


def _load_settings(env_file: str | None) -> Settings:
    if env_file in (None, ""):
        return Settings()
    return Settings(_env_file=env_file)


def _build_runtime(settings: Settings) -> Runtime:
    adapters = build_adapters(settings)
    try:
        ledger = LedgerStore(db_path=settings.state_db_path)
    except Exception:
        adapters.close()
        raise
    process_state = ProcessStateStore(settings.process_state_path)
    fund_manager = FundLifecycleManager(
        settings=settings,
        gateway=adapters.gateway,
        ledger=ledger,
        process_state=process_state,
    )
    return Runtime(
        settings=settings,
        adapters=adapters,
        ledger=ledger,
        process_state=process_state,
        fund_manager=fund_manager,
    )


def _install_signal_handlers(state: SchedulerState) -> dict[int, object]:
    def _handle(signum: int, frame: object) -> None:
        del frame
        if not state.running:
            raise KeyboardInterrupt
        logger.warning(
            "shutdown_requested", extra={"extra": {"signal": signal.Signals(signum).name}}
        )
        state.request_shutdown()

    previous: dict[int, object] = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.getsignal(signum)
        signal.signal(signum, _handle)
    return previous


def _restore_signal_handlers(previous: dict[int, object]) -> None:
    for signum, handler in previous.items():
        signal.signal(signum, handler)  # type: ignore[arg-type]


def run_scheduler(settings: Settings, *, max_ticks: int | None = None) -> int:
    with single_instance_lock(db_path=settings.state_db_path):
        runtime = _build_runtime(settings)
        state = SchedulerState()
        previous_handlers = _install_signal_handlers(state)
        try:
            runtime.fund_manager.adopt_existing_fund()
            maintenance = MaintenanceService(
                settings=settings,
                gateway=runtime.adapters.gateway,
                swap_service=runtime.adapters.swap_service,
                price_feed=runtime.adapters.price_feed,
                ledger=runtime.ledger,
            )
            scheduler = RoundScheduler(
                settings=settings,
                gateway=runtime.adapters.gateway,
                price_feed=runtime.adapters.price_feed,
                ledger=runtime.ledger,
                fund_manager=runtime.fund_manager,
                maintenance=maintenance,
                state=state,
            )
            ticks = scheduler.run(max_ticks=max_ticks)
            print(
                f"run: ticks={ticks} deployed_cycles={state.deployed_cycles} "
                f"last_outcome={state.last_outcome.value if state.last_outcome else 'none'}"
            )
            return 0
        except KeyboardInterrupt:
            logger.info("scheduler_interrupted", extra={"extra": {"run_id": state.run_id}})
            print("run: interrupted, shutting down")
            return 0
        finally:
            _restore_signal_handlers(previous_handlers)
            runtime.close()


def _pnl_payload(overview) -> dict[str, object]:
    return {
        "report": asdict(overview.report),
        "reconciliation": asdict(overview.reconciliation)
        if overview.reconciliation is not None
        else None,
        "fee_review": asdict(overview.fee_review),
        "reward_price_in_base": overview.reward_price_in_base,
        "price_source": overview.price_source,
    }


def run_pnl(settings: Settings, *, json_output: bool = False) -> int:
    runtime = _build_runtime(settings)
    try:
        service = PnLService(
            ledger=runtime.ledger,
            gateway=runtime.adapters.gateway,
            price_feed=runtime.adapters.price_feed,
            reconciliation_tolerance=settings.reconciliation_tolerance,
            fee_discrepancy_tolerance=settings.fee_discrepancy_tolerance,
        )
        overview = service.overview()
    finally:
        runtime.close()

    if json_output:
        print(json.dumps(redact_data(_pnl_payload(overview)), sort_keys=True, default=str))
        return 0

    report = overview.report
    print(f"pnl: deployed={report.deployed} current_value={report.current_value}")
    print(f"  claimed_base={report.claimed_base} swapped_base={report.swapped_base}")
    print(f"  fund_balance={report.fund_balance} claimable_base={report.claimable_base}")
    print(f"  net_profit={report.net_profit} roi_pct={report.roi_pct:.2f}")
    print(f"  in_flight={report.in_flight_total} ({report.in_flight_count} cycles, not counted)")
    print(
        f"  reward_tokens={report.reward_token_balance} "
        f"value_in_base={report.reward_token_value_in_base} "
        f"(price {overview.reward_price_in_base}, {overview.price_source})"
    )
    if report.starting_value is not None:
        source = "baseline" if report.has_baseline else "earliest snapshot"
        print(
            f"  starting_value={report.starting_value} ({source}) "
            f"holdings={report.holdings_value} profit={report.baseline_profit} "
            f"roi_pct={report.baseline_roi_pct:.2f}"
        )
    reconciliation = overview.reconciliation
    if reconciliation is not None:
        state = "ok" if reconciliation.reconciled else "MISMATCH"
        print(
            f"reconciliation: {state} expected={reconciliation.expected_wallet_balance} "
            f"current={reconciliation.current_wallet_balance} "
            f"difference={reconciliation.difference}"
        )
        for reason in reconciliation.reasons:
            print(f"  - {reason}")
    fee_review = overview.fee_review
    print(
        f"fees: actual={fee_review.actual_total} estimated={fee_review.estimated_total} "
        f"difference={fee_review.difference}"
        + (" NEEDS REVIEW" if fee_review.needs_review else "")
    )
    return 0


def run_set_baseline(settings: Settings, *, amount: str | None = None) -> int:
    explicit: Decimal | None = None
    if amount is not None:
        try:
            explicit = Decimal(amount)
        except InvalidOperation:
            print(f"set-baseline: invalid amount {amount!r}", file=sys.stderr)
            return 2
        if not explicit.is_finite() or explicit <= 0:
            print("set-baseline: amount must be > 0", file=sys.stderr)
            return 2

    with single_instance_lock(db_path=settings.state_db_path):
        runtime = _build_runtime(settings)
        try:
            if explicit is None:
                service = PnLService(
                    ledger=runtime.ledger,
                    gateway=runtime.adapters.gateway,
                    price_feed=runtime.adapters.price_feed,
                )
                explicit = service.current_holdings()
                notes = "wallet + fund + claimable at set-baseline"
            else:
                notes = "set manually"
            if explicit <= 0:
                print("set-baseline: current holdings are zero; pass --amount", file=sys.stderr)
                return 2
            stored, created = runtime.ledger.set_baseline(
                explicit, now=datetime.now(UTC), notes=notes
            )
        finally:
            runtime.close()

    if created:
        print(f"set-baseline: recorded {stored.base_amount}")
    else:
        print(f"set-baseline: already set to {stored.base_amount}; unchanged")
    return 0


def run_status(settings: Settings) -> int:
    runtime = _build_runtime(settings)
    try:
        gateway = runtime.adapters.gateway
        fund = gateway.get_fund()
        miner = gateway.get_miner()
        wallet = gateway.get_wallet_balances()
        stake = gateway.get_stake()
        in_flight = runtime.ledger.list_in_flight()
        payload = {
            "dry_run": settings.dry_run,
            "cycle_id": gateway.get_current_cycle_id(),
            "risk_parameter": gateway.get_risk_parameter(),
            "wallet": asdict(wallet),
            "fund": {
                **asdict(fund),
                "remaining_cycles": fund.remaining_cycles,
            }
            if fund is not None
            else None,
            "miner": asdict(miner) if miner is not None else None,
            "stake": asdict(stake) if stake is not None else None,
            "sizing": asdict(runtime.fund_manager.sizing),
            "in_flight": [asdict(entry) for entry in in_flight],
            "lock_owner": asdict(read_lock_owner(settings.state_db_path)),
        }
    finally:
        runtime.close()
    print(json.dumps(redact_data(payload), sort_keys=True, default=str))
    return 0


def run_close_fund(settings: Settings) -> int:
    with single_instance_lock(db_path=settings.state_db_path):
        runtime = _build_runtime(settings)
        try:
            result = runtime.fund_manager.close(
                reason="manual", cycle_id=runtime.adapters.gateway.get_current_cycle_id()
            )
        finally:
            runtime.close()
    if not result.closed:
        print("close-fund: no fund to close")
        return 0
    print(f"close-fund: returned={result.returned} signature={result.signature or 'n/a'}")
    return 0


def run_history(settings: Settings, *, days: int = 7, rounds: int = 10) -> int:
    ledger = LedgerStore(db_path=settings.state_db_path)
    try:
        summaries = ledger.daily_summaries(days, now=datetime.now(UTC))
        recent = ledger.load_rounds(limit=rounds)
    finally:
        _close_best_effort(ledger, "ledger")

    print(f"history: last {max(1, days)} day(s)")
    if not summaries:
        print("  no ledger activity")
    for summary in summaries:
        print(
            f"  {summary.day.isoformat()} deploys={summary.deploy_count} "
            f"spent={summary.spent_on_cycles} claimed_base={summary.claimed_base} "
            f"claimed_reward={summary.claimed_reward} swapped_base={summary.swapped_base} "
            f"fees={summary.network_fees}"
        )
    if recent:
        print(f"rounds: most recent {len(recent)}")
        for record in recent:
            ev = record.expected_value if record.expected_value is not None else "n/a"
            print(
                f"  cycle={record.cycle_id} risk={record.risk_parameter} "
                f"deployed={record.deployed_amount} fund_after={record.fund_balance_after} ev={ev}"
            )
    return 0


def _close_best_effort(resource: object, label: str) -> None:
    close = getattr(resource, "close", None)
    if not callable(close):
        return
    try:
        close()
    except Exception:  # noqa: BLE001
        logger.warning(
            "Failed to close resource", extra={"extra": {"resource": label}}, exc_info=True
        )


if __name__ == "__main__":
    raise SystemExit(main())
