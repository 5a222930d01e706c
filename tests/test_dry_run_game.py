from __future__ import annotations

from decimal import Decimal

import pytest

from orbbot.adapters.dry_run_game import DryRunGameGateway, DryRunSwapService
from orbbot.adapters.game import AlreadyAppliedError, InsufficientStateError, PreconditionError
from orbbot.domain.models import Operation

FEE = Decimal("0.000005")


def _open(sim: DryRunGameGateway, deposit: str = "0.5", per_square: str = "0.0004") -> None:
    sim.submit(
        [
            Operation.open_fund(
                deposit=Decimal(deposit),
                amount_per_square=Decimal(per_square),
                squares=25,
                fee_per_execution=Decimal("0.00001"),
            )
        ]
    )


def test_open_fund_moves_deposit_and_creates_miner(sim: DryRunGameGateway) -> None:
    _open(sim)

    fund = sim.get_fund()
    assert fund.balance == Decimal("0.5")
    assert fund.per_cycle_cost == Decimal("0.01001")
    assert fund.remaining_cycles == 49
    assert sim.get_wallet_balances().base == Decimal("0.5") - FEE
    assert sim.get_miner().checkpoint_id == 1


def test_second_open_is_already_applied(sim: DryRunGameGateway) -> None:
    _open(sim)

    with pytest.raises(AlreadyAppliedError):
        _open(sim)
    assert len(sim.submitted) == 1


def test_deploy_lifecycle_and_settlement(sim: DryRunGameGateway) -> None:
    _open(sim)
    sim.submit([Operation.deploy(1)])

    with pytest.raises(AlreadyAppliedError):
        sim.submit([Operation.deploy(1)])

    sim.advance_cycle()
    with pytest.raises(PreconditionError, match="checkpoint"):
        sim.submit([Operation.deploy(2)])
    with pytest.raises(PreconditionError, match="has ended"):
        sim.submit([Operation.deploy(1)])

    sim.submit([Operation.checkpoint(), Operation.deploy(2)])

    miner = sim.get_miner()
    assert miner.checkpoint_id == 2
    assert miner.claimable_base == Decimal("0.0095")
    assert miner.claimable_reward == Decimal("0.1")
    assert sim.get_fund().balance == Decimal("0.5") - 2 * Decimal("0.01001")

    with pytest.raises(AlreadyAppliedError):
        sim.submit([Operation.checkpoint()])


def test_failed_batch_leaves_state_untouched(sim: DryRunGameGateway) -> None:
    _open(sim)
    sim.advance_cycle()
    wallet_before = sim.get_wallet_balances()

    with pytest.raises(InsufficientStateError):
        sim.submit([Operation.checkpoint(), Operation.claim_base()])

    assert sim.get_miner().checkpoint_id == 1
    assert sim.get_wallet_balances() == wallet_before


def test_deploy_from_drained_fund_is_insufficient(sim: DryRunGameGateway) -> None:
    _open(sim, deposit="0.005")

    with pytest.raises(InsufficientStateError):
        sim.submit([Operation.deploy(1)])


def test_submit_needs_network_fee(sim: DryRunGameGateway) -> None:
    with pytest.raises(InsufficientStateError, match="network fee"):
        _open(sim, deposit="1.0")
    assert sim.get_fund() is None


def test_close_returns_balance_to_wallet(sim: DryRunGameGateway) -> None:
    _open(sim)

    sim.submit([Operation.close_fund()])

    assert sim.get_fund() is None
    assert sim.get_wallet_balances().base == Decimal("1.0") - 2 * FEE
    with pytest.raises(PreconditionError):
        sim.submit([Operation.close_fund()])


def test_empty_submission_is_rejected(sim: DryRunGameGateway) -> None:
    with pytest.raises(PreconditionError):
        sim.submit([])


def test_cycles_follow_the_clock() -> None:
    now = {"t": 100.0}
    sim = DryRunGameGateway(
        wallet_balance=Decimal("1"),
        risk_parameter=Decimal("250"),
        start_cycle_id=40,
        cycle_seconds=60,
        clock=lambda: now["t"],
    )

    assert sim.get_current_cycle_id() == 40
    now["t"] += 59
    assert sim.get_current_cycle_id() == 40
    now["t"] += 1
    assert sim.get_current_cycle_id() == 41
    now["t"] += 600
    assert sim.get_current_cycle_id() == 51


def test_stake_and_yield(sim: DryRunGameGateway) -> None:
    _open(sim)
    sim.submit([Operation.deploy(1)])
    sim.advance_cycle()
    sim.submit([Operation.checkpoint(), Operation.claim_reward_token()])

    with pytest.raises(PreconditionError):
        sim.submit([Operation.claim_yield(Decimal("0.01"))])

    sim.submit([Operation.stake(Decimal("0.08"))])
    assert sim.get_stake().balance == Decimal("0.08")
    assert sim.get_wallet_balances().reward_token == Decimal("0.02")

    with pytest.raises(InsufficientStateError):
        sim.submit([Operation.claim_yield(Decimal("0.01"))])
    sim.accrue_stake_yield(Decimal("0.05"))
    sim.submit([Operation.claim_yield(Decimal("0.01"))])
    assert sim.get_wallet_balances().reward_token == Decimal("0.03")


def test_swap_service_applies_slippage_bound(sim: DryRunGameGateway) -> None:
    _open(sim)
    sim.submit([Operation.deploy(1)])
    sim.advance_cycle()
    sim.submit([Operation.checkpoint(), Operation.claim_reward_token()])
    swaps = DryRunSwapService(sim, Decimal("0.02"))
    base_before = sim.get_wallet_balances().base

    result = swaps.swap(Decimal("0.1"), 100)

    assert result.success is True
    assert result.amount_out == Decimal("0.00198")
    assert sim.get_wallet_balances().base == base_before + Decimal("0.00198")
    assert sim.get_wallet_balances().reward_token == Decimal("0")
    assert swaps.swap(Decimal("0"), 100).success is False
    with pytest.raises(InsufficientStateError):
        swaps.swap(Decimal("1"), 100)
