from __future__ import annotations

import logging
from datetime import UTC, datetime
from decimal import Decimal

from orbbot.adapters.dry_run_game import DryRunGameGateway, DryRunSwapService
from orbbot.adapters.price_feed import StaticPriceFeed
from orbbot.config import Settings
from orbbot.domain.ledger import LedgerEventKind, LedgerStatus
from orbbot.domain.models import Operation
from orbbot.services.ledger_store import LedgerStore
from orbbot.services.maintenance import MaintenanceService, MaintenanceTask, run_due_tasks

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
PRICE = Decimal("0.02")


def _service(sim: DryRunGameGateway, ledger: LedgerStore, **env: object) -> MaintenanceService:
    settings = Settings(SUBMIT_BASE_DELAY_MS=0, SUBMIT_MAX_DELAY_MS=0, **env)
    return MaintenanceService(
        settings=settings,
        gateway=sim,
        swap_service=DryRunSwapService(sim, PRICE),
        price_feed=StaticPriceFeed(PRICE),
        ledger=ledger,
        now_fn=lambda: NOW,
        sleep_fn=lambda _x: None,
    )


def _earn_one_cycle(sim: DryRunGameGateway, ledger: LedgerStore) -> None:
    """Deploy 0.25 in cycle 1 and settle it: 0.2375 base and 2.5 reward tokens claimable."""
    sim.submit(
        [
            Operation.open_fund(
                deposit=Decimal("0.9"),
                amount_per_square=Decimal("0.01"),
                squares=25,
                fee_per_execution=Decimal("0"),
            )
        ]
    )
    sim.submit([Operation.deploy(1)])
    ledger.record_in_flight(1, Decimal("0.25"), now=NOW)
    sim.advance_cycle()
    sim.submit([Operation.checkpoint()])


def test_run_due_tasks_runs_in_order_and_respects_intervals() -> None:
    calls: list[str] = []
    tasks = [
        MaintenanceTask("claim", 1_000, lambda: calls.append("claim")),
        MaintenanceTask("stake", 5_000, lambda: calls.append("stake")),
        MaintenanceTask("swap", 1_000, lambda: calls.append("swap"), enabled=False),
    ]
    last_run: dict[str, float] = {}

    assert run_due_tasks(tasks, last_run, now=100.0) == ["claim", "stake"]
    assert run_due_tasks(tasks, last_run, now=100.5) == []
    assert run_due_tasks(tasks, last_run, now=101.0) == ["claim"]
    assert run_due_tasks(tasks, last_run, now=105.0) == ["claim", "stake"]
    assert calls == ["claim", "stake", "claim", "claim", "stake"]
    assert "swap" not in last_run


def test_failing_task_is_stamped_and_does_not_block_later_tasks(caplog) -> None:
    calls: list[str] = []

    def _boom() -> None:
        raise RuntimeError("rpc down")

    tasks = [
        MaintenanceTask("claim", 1_000, _boom),
        MaintenanceTask("snapshot", 1_000, lambda: calls.append("snapshot")),
    ]
    last_run: dict[str, float] = {}

    ran = run_due_tasks(tasks, last_run, now=10.0)

    assert ran == ["claim", "snapshot"]
    assert calls == ["snapshot"]
    assert last_run["claim"] == 10.0
    assert "maintenance_task_failed" in caplog.text
    assert run_due_tasks(tasks, last_run, now=10.5) == []


def test_task_table_order_and_toggles(sim: DryRunGameGateway, ledger: LedgerStore) -> None:
    service = _service(sim, ledger, CHECK_REWARDS_INTERVAL_MS=1_000, AUTO_STAKE_ENABLED=True)

    tasks = {task.name: task for task in service.tasks()}

    assert list(tasks) == ["claim", "stake", "swap", "snapshot"]
    assert tasks["stake"].interval_ms == 2_000
    assert tasks["stake"].enabled is True
    assert tasks["swap"].enabled is True
    assert _service(sim, ledger).tasks()[1].enabled is False


def test_claim_records_both_rewards_and_resolves_in_flight(
    sim: DryRunGameGateway, ledger: LedgerStore
) -> None:
    _earn_one_cycle(sim, ledger)
    service = _service(sim, ledger)

    service.claim_rewards()

    base_claims = ledger.load_events(kinds=[LedgerEventKind.CLAIM_BASE])
    reward_claims = ledger.load_events(kinds=[LedgerEventKind.CLAIM_REWARD_TOKEN])
    assert [e.base_amount for e in base_claims] == [Decimal("0.2375")]
    assert [e.reward_token_amount for e in reward_claims] == [Decimal("2.5")]
    assert base_claims[0].signature == reward_claims[0].signature
    # One submission pays one network fee.
    assert base_claims[0].network_fee == Decimal("0.000005")
    assert reward_claims[0].network_fee == Decimal("0")
    assert ledger.list_in_flight() == []
    assert sim.get_wallet_balances().reward_token == Decimal("2.5")


def test_claim_below_thresholds_submits_nothing(
    sim: DryRunGameGateway, ledger: LedgerStore
) -> None:
    _earn_one_cycle(sim, ledger)
    submitted_before = len(sim.submitted)
    service = _service(sim, ledger, AUTO_CLAIM_SOL_THRESHOLD=1, AUTO_CLAIM_ORB_THRESHOLD=10)

    service.claim_rewards()

    assert len(sim.submitted) == submitted_before
    assert ledger.load_events() == []
    assert len(ledger.list_in_flight()) == 1


def test_claim_only_the_reward_token_side(sim: DryRunGameGateway, ledger: LedgerStore) -> None:
    _earn_one_cycle(sim, ledger)
    service = _service(sim, ledger, AUTO_CLAIM_SOL_THRESHOLD=1)

    service.claim_rewards()

    assert ledger.load_events(kinds=[LedgerEventKind.CLAIM_BASE]) == []
    assert len(ledger.load_events(kinds=[LedgerEventKind.CLAIM_REWARD_TOKEN])) == 1
    assert sim.get_miner().claimable_base == Decimal("0.2375")


def test_stake_excess_then_claim_yield(sim: DryRunGameGateway, ledger: LedgerStore) -> None:
    _earn_one_cycle(sim, ledger)
    service = _service(sim, ledger, MIN_ORB_TO_KEEP="0.5", STAKE_ORB_THRESHOLD="1")
    service.claim_rewards()

    service.stake_excess()

    stakes = ledger.load_events(kinds=[LedgerEventKind.STAKE])
    assert [e.reward_token_amount for e in stakes] == [Decimal("2.0")]
    assert sim.get_stake().balance == Decimal("2.0")

    # No yield has accrued yet; the claim is skipped quietly.
    service.claim_rewards()
    assert ledger.load_events(kinds=[LedgerEventKind.CLAIM_YIELD]) == []

    sim.accrue_stake_yield(Decimal("1"))
    service.claim_rewards()
    yields = ledger.load_events(kinds=[LedgerEventKind.CLAIM_YIELD])
    assert [e.reward_token_amount for e in yields] == [Decimal("0.5")]


def test_stake_below_threshold_is_skipped(sim: DryRunGameGateway, ledger: LedgerStore) -> None:
    _earn_one_cycle(sim, ledger)
    service = _service(sim, ledger)
    service.claim_rewards()

    service.stake_excess()

    assert ledger.load_events(kinds=[LedgerEventKind.STAKE]) == []


def test_swap_keeps_reserve_and_records_proceeds(
    sim: DryRunGameGateway, ledger: LedgerStore
) -> None:
    _earn_one_cycle(sim, ledger)
    service = _service(sim, ledger, MIN_ORB_TO_KEEP="0.5")
    service.claim_rewards()
    wallet_before = sim.get_wallet_balances().base

    service.swap_rewards()

    swaps = ledger.load_events(kinds=[LedgerEventKind.SWAP])
    assert len(swaps) == 1
    assert swaps[0].status is LedgerStatus.SUCCESS
    assert swaps[0].reward_token_amount == Decimal("2.0")
    assert swaps[0].base_amount == Decimal("0.0398")
    assert sim.get_wallet_balances().reward_token == Decimal("0.5")
    assert sim.get_wallet_balances().base == wallet_before + Decimal("0.0398")


def test_swap_skipped_when_price_below_minimum(
    sim: DryRunGameGateway, ledger: LedgerStore, caplog
) -> None:
    _earn_one_cycle(sim, ledger)
    service = _service(sim, ledger, MIN_ORB_TO_KEEP="0.5", MIN_ORB_PRICE_USD="1")
    service.claim_rewards()

    service.swap_rewards()

    assert ledger.load_events(kinds=[LedgerEventKind.SWAP]) == []
    assert sim.get_wallet_balances().reward_token == Decimal("2.5")
    assert "swap_skipped_price_below_minimum" in caplog.text


def test_swap_needs_tokens_above_reserve(sim: DryRunGameGateway, ledger: LedgerStore) -> None:
    _earn_one_cycle(sim, ledger)
    service = _service(sim, ledger)
    service.claim_rewards()

    # Default reserve of 5 tokens exceeds the 2.5 held.
    service.swap_rewards()

    assert ledger.load_events(kinds=[LedgerEventKind.SWAP]) == []


def test_capture_snapshot_records_balances_and_price(
    sim: DryRunGameGateway, ledger: LedgerStore, caplog
) -> None:
    caplog.set_level(logging.DEBUG)
    _earn_one_cycle(sim, ledger)
    service = _service(sim, ledger)

    service.capture_snapshot()

    snapshot = ledger.latest_balance_snapshot()
    assert snapshot is not None
    assert snapshot.wallet_base == sim.get_wallet_balances().base
    assert snapshot.fund_balance == Decimal("0.65")
    assert snapshot.claimable_base == Decimal("0.2375")
    assert snapshot.claimable_reward == Decimal("2.5")
    assert ledger.latest_price().price_in_base == PRICE
    assert "balance_snapshot_captured" in caplog.text
