from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any

_ZERO = Decimal("0")


@dataclass(frozen=True)
class FundSnapshot:
    """Pooled automation fund as observed on the last poll."""

    balance: Decimal
    per_cycle_cost: Decimal

    @property
    def remaining_cycles(self) -> int:
        if self.per_cycle_cost <= 0:
            return 0
        return int(self.balance // self.per_cycle_cost)

    @property
    def depleted(self) -> bool:
        return self.per_cycle_cost > self.balance


@dataclass(frozen=True)
class MinerState:
    checkpoint_id: int
    claimable_base: Decimal = _ZERO
    claimable_reward: Decimal = _ZERO


@dataclass(frozen=True)
class StakeState:
    balance: Decimal


@dataclass(frozen=True)
class WalletBalances:
    base: Decimal
    reward_token: Decimal = _ZERO


@dataclass(frozen=True)
class PriceQuote:
    price_in_base: Decimal
    price_in_quote: Decimal


@dataclass(frozen=True)
class SubmitResult:
    signature: str
    fee: Decimal = _ZERO


@dataclass(frozen=True)
class SwapResult:
    success: bool
    amount_out: Decimal = _ZERO
    signature: str | None = None
    fee: Decimal = _ZERO


class OperationKind(StrEnum):
    OPEN_FUND = "open_fund"
    CLOSE_FUND = "close_fund"
    DEPLOY = "deploy"
    CHECKPOINT = "checkpoint"
    CLAIM_BASE = "claim_base"
    CLAIM_REWARD_TOKEN = "claim_reward_token"
    CLAIM_YIELD = "claim_yield"
    STAKE = "stake"


@dataclass(frozen=True)
class Operation:
    """A remote instruction; the game adapter owns its wire encoding."""

    kind: OperationKind
    amount: Decimal | None = None
    params: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def open_fund(
        cls,
        *,
        deposit: Decimal,
        amount_per_square: Decimal,
        squares: int,
        fee_per_execution: Decimal,
    ) -> Operation:
        return cls(
            OperationKind.OPEN_FUND,
            amount=deposit,
            params={
                "amount_per_square": amount_per_square,
                "squares": squares,
                "fee_per_execution": fee_per_execution,
            },
        )

    @classmethod
    def close_fund(cls) -> Operation:
        return cls(OperationKind.CLOSE_FUND)

    @classmethod
    def deploy(cls, cycle_id: int) -> Operation:
        return cls(OperationKind.DEPLOY, params={"cycle_id": cycle_id})

    @classmethod
    def checkpoint(cls) -> Operation:
        return cls(OperationKind.CHECKPOINT)

    @classmethod
    def claim_base(cls) -> Operation:
        return cls(OperationKind.CLAIM_BASE)

    @classmethod
    def claim_reward_token(cls) -> Operation:
        return cls(OperationKind.CLAIM_REWARD_TOKEN)

    @classmethod
    def claim_yield(cls, amount: Decimal) -> Operation:
        return cls(OperationKind.CLAIM_YIELD, amount=amount)

    @classmethod
    def stake(cls, amount: Decimal) -> Operation:
        return cls(OperationKind.STAKE, amount=amount)


@dataclass(frozen=True)
class SizingState:
    """Which risk parameter the live fund allocation was sized for."""

    sizing_risk_parameter: Decimal = _ZERO
    sizing_timestamp: datetime | None = None
    sizing_cycle_id: int | None = None

    @property
    def is_sized(self) -> bool:
        return self.sizing_risk_parameter > 0
