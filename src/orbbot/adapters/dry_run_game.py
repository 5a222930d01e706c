from __future__ import annotations

import copy
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal

from orbbot.adapters.game import (
    AlreadyAppliedError,
    GameGateway,
    InsufficientStateError,
    PreconditionError,
    SwapService,
)
from orbbot.domain.models import (
    FundSnapshot,
    MinerState,
    Operation,
    OperationKind,
    StakeState,
    SubmitResult,
    SwapResult,
    WalletBalances,
)
from orbbot.domain.strategy import MIN_UNIT

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")


@dataclass
class _Fund:
    balance: Decimal
    amount_per_square: Decimal
    squares: int
    fee_per_execution: Decimal

    @property
    def deployed_per_cycle(self) -> Decimal:
        return self.amount_per_square * self.squares

    @property
    def per_cycle_cost(self) -> Decimal:
        return self.deployed_per_cycle + self.fee_per_execution


@dataclass
class _SimState:
    wallet_base: Decimal
    wallet_reward: Decimal = _ZERO
    fund: _Fund | None = None
    miner: MinerState | None = None
    stake_balance: Decimal = _ZERO
    stake_yield: Decimal = _ZERO
    deployments: dict[int, Decimal] = field(default_factory=dict)


class DryRunGameGateway(GameGateway):
    """In-memory stand-in for the on-chain game.

    Rewards for a deployment become claimable once the miner's checkpoint moves past the
    deployment's cycle, which reproduces the one-cycle visibility lag of the real game.
    Cycles advance through :meth:`advance_cycle` or, when ``cycle_seconds`` is set, with
    the clock.
    """

    def __init__(
        self,
        *,
        wallet_balance: Decimal,
        risk_parameter: Decimal,
        start_cycle_id: int = 1,
        cycle_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        network_fee: Decimal = Decimal("0.000005"),
        principal_return: Decimal = Decimal("0.95"),
        reward_tokens_per_base: Decimal = Decimal("10"),
        competition_total: Decimal | None = None,
    ) -> None:
        self.risk_parameter = risk_parameter
        self.network_fee = network_fee
        self.principal_return = principal_return
        self.reward_tokens_per_base = reward_tokens_per_base
        self.competition_total = competition_total
        self.submitted: list[tuple[Operation, ...]] = []
        self._state = _SimState(wallet_base=wallet_balance)
        self._cycle_id = start_cycle_id
        self._cycle_seconds = cycle_seconds
        self._clock = clock
        self._clock_origin = clock()
        self._signature_seq = 0

    def advance_cycle(self, count: int = 1) -> int:
        self._cycle_id += count
        return self._cycle_id

    def accrue_stake_yield(self, amount: Decimal) -> None:
        self._state.stake_yield += amount

    def get_current_cycle_id(self) -> int:
        if self._cycle_seconds is None:
            return self._cycle_id
        elapsed = self._clock() - self._clock_origin
        return self._cycle_id + int(elapsed // self._cycle_seconds)

    def get_risk_parameter(self) -> Decimal:
        return self.risk_parameter

    def get_competition_total(self, cycle_id: int) -> Decimal | None:
        del cycle_id
        return self.competition_total

    def get_fund(self) -> FundSnapshot | None:
        fund = self._state.fund
        if fund is None:
            return None
        return FundSnapshot(balance=fund.balance, per_cycle_cost=fund.per_cycle_cost)

    def get_miner(self) -> MinerState | None:
        return self._state.miner

    def get_stake(self) -> StakeState | None:
        if self._state.stake_balance <= 0:
            return None
        return StakeState(balance=self._state.stake_balance)

    def get_wallet_balances(self) -> WalletBalances:
        return WalletBalances(base=self._state.wallet_base, reward_token=self._state.wallet_reward)

    def submit(self, operations: Sequence[Operation]) -> SubmitResult:
        if not operations:
            raise PreconditionError("no operations to submit")
        draft = copy.deepcopy(self._state)
        cycle_id = self.get_current_cycle_id()
        for operation in operations:
            self._apply(draft, operation, cycle_id)
        if draft.wallet_base < self.network_fee:
            raise InsufficientStateError("insufficient funds for network fee")
        draft.wallet_base -= self.network_fee
        self._state = draft
        self._signature_seq += 1
        self.submitted.append(tuple(operations))
        signature = f"dryrun-{self._signature_seq:08d}"
        logger.info(
            "dry_run_submitted",
            extra={
                "extra": {
                    "signature": signature,
                    "operations": [op.kind.value for op in operations],
                    "cycle_id": cycle_id,
                }
            },
        )
        return SubmitResult(signature=signature, fee=self.network_fee)

    def _apply(self, state: _SimState, operation: Operation, cycle_id: int) -> None:
        kind = operation.kind
        if kind is OperationKind.OPEN_FUND:
            self._open_fund(state, operation, cycle_id)
        elif kind is OperationKind.CLOSE_FUND:
            if state.fund is None:
                raise PreconditionError("no fund to close")
            state.wallet_base += state.fund.balance
            state.fund = None
        elif kind is OperationKind.DEPLOY:
            self._deploy(state, operation, cycle_id)
        elif kind is OperationKind.CHECKPOINT:
            self._checkpoint(state, cycle_id)
        elif kind is OperationKind.CLAIM_BASE:
            miner = state.miner
            if miner is None or miner.claimable_base <= 0:
                raise InsufficientStateError("nothing to claim")
            state.wallet_base += miner.claimable_base
            state.miner = MinerState(miner.checkpoint_id, _ZERO, miner.claimable_reward)
        elif kind is OperationKind.CLAIM_REWARD_TOKEN:
            miner = state.miner
            if miner is None or miner.claimable_reward <= 0:
                raise InsufficientStateError("nothing to claim")
            state.wallet_reward += miner.claimable_reward
            state.miner = MinerState(miner.checkpoint_id, miner.claimable_base, _ZERO)
        elif kind is OperationKind.CLAIM_YIELD:
            amount = operation.amount or _ZERO
            if state.stake_balance <= 0:
                raise PreconditionError("no stake account")
            if amount <= 0 or state.stake_yield < amount:
                raise InsufficientStateError("insufficient staking rewards")
            state.stake_yield -= amount
            state.wallet_reward += amount
        elif kind is OperationKind.STAKE:
            amount = operation.amount or _ZERO
            if amount <= 0 or state.wallet_reward < amount:
                raise InsufficientStateError("insufficient reward tokens to stake")
            state.wallet_reward -= amount
            state.stake_balance += amount
        else:
            raise PreconditionError(f"unsupported operation {kind}")

    def _open_fund(self, state: _SimState, operation: Operation, cycle_id: int) -> None:
        if state.fund is not None:
            raise AlreadyAppliedError("fund already exists")
        deposit = operation.amount or _ZERO
        if deposit <= 0:
            raise PreconditionError("deposit must be positive")
        if state.wallet_base < deposit:
            raise InsufficientStateError("insufficient wallet balance for deposit")
        state.wallet_base -= deposit
        state.fund = _Fund(
            balance=deposit,
            amount_per_square=Decimal(operation.params["amount_per_square"]),
            squares=int(operation.params["squares"]),
            fee_per_execution=Decimal(operation.params.get("fee_per_execution", _ZERO)),
        )
        if state.miner is None:
            state.miner = MinerState(checkpoint_id=cycle_id)

    def _deploy(self, state: _SimState, operation: Operation, cycle_id: int) -> None:
        fund = state.fund
        if fund is None:
            raise PreconditionError("no fund to deploy from")
        target_cycle = int(operation.params.get("cycle_id", cycle_id))
        if target_cycle != cycle_id:
            raise PreconditionError(f"cycle {target_cycle} has ended")
        if cycle_id in state.deployments:
            raise AlreadyAppliedError(f"already deployed in cycle {cycle_id}")
        miner = state.miner
        if miner is None or miner.checkpoint_id < cycle_id:
            raise PreconditionError("miner not checkpointed")
        if fund.balance < fund.per_cycle_cost:
            raise InsufficientStateError("insufficient fund balance")
        fund.balance -= fund.per_cycle_cost
        state.deployments[cycle_id] = fund.deployed_per_cycle

    def _checkpoint(self, state: _SimState, cycle_id: int) -> None:
        miner = state.miner
        if miner is None:
            raise PreconditionError("no miner account")
        if miner.checkpoint_id >= cycle_id:
            raise AlreadyAppliedError("miner already checkpointed")
        settled = state.deployments.get(miner.checkpoint_id, _ZERO)
        state.miner = MinerState(
            checkpoint_id=miner.checkpoint_id + 1,
            claimable_base=miner.claimable_base
            + (settled * self.principal_return).quantize(MIN_UNIT, rounding=ROUND_DOWN),
            claimable_reward=miner.claimable_reward
            + (settled * self.reward_tokens_per_base).quantize(MIN_UNIT, rounding=ROUND_DOWN),
        )

    def swap_reward_for_base(self, amount_in: Decimal, amount_out: Decimal) -> None:
        if self._state.wallet_reward < amount_in:
            raise InsufficientStateError("insufficient reward tokens to swap")
        self._state.wallet_reward -= amount_in
        self._state.wallet_base += amount_out


class DryRunSwapService(SwapService):
    """Swaps reward tokens inside the simulator at a fixed price less the slippage bound."""

    def __init__(self, gateway: DryRunGameGateway, price_in_base: Decimal) -> None:
        self._gateway = gateway
        self._price_in_base = price_in_base
        self._seq = 0

    def swap(self, amount_in: Decimal, slippage_bps_max: int) -> SwapResult:
        if amount_in <= 0:
            return SwapResult(success=False)
        haircut = Decimal(slippage_bps_max) / Decimal("10000")
        amount_out = (amount_in * self._price_in_base * (Decimal("1") - haircut)).quantize(
            MIN_UNIT, rounding=ROUND_DOWN
        )
        self._gateway.swap_reward_for_base(amount_in, amount_out)
        self._seq += 1
        return SwapResult(
            success=True,
            amount_out=amount_out,
            signature=f"dryrun-swap-{self._seq:08d}",
            fee=_ZERO,
        )
