from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum
from uuid import uuid4

_ZERO = Decimal("0")


class LedgerEventKind(StrEnum):
    DEPLOY = "deploy"
    CLAIM_BASE = "claim_base"
    CLAIM_REWARD_TOKEN = "claim_reward_token"
    CLAIM_YIELD = "claim_yield"
    SWAP = "swap"
    STAKE = "stake"
    UNSTAKE = "unstake"
    FUND_OPEN = "fund_open"
    FUND_CLOSE = "fund_close"
    BASELINE = "baseline"


class LedgerStatus(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _new_event_id() -> str:
    return uuid4().hex


@dataclass(frozen=True)
class LedgerEvent:
    kind: LedgerEventKind
    timestamp: datetime
    base_amount: Decimal = _ZERO
    reward_token_amount: Decimal = _ZERO
    status: LedgerStatus = LedgerStatus.SUCCESS
    signature: str | None = None
    cycle_id: int | None = None
    notes: str = ""
    reward_token_price_usd: Decimal | None = None
    network_fee: Decimal = _ZERO
    protocol_fee: Decimal = _ZERO
    estimated_fee: Decimal | None = None
    event_id: str = field(default_factory=_new_event_id)

    @property
    def succeeded(self) -> bool:
        return self.status == LedgerStatus.SUCCESS


@dataclass(frozen=True)
class InFlightDeployment:
    cycle_id: int
    base_amount: Decimal
    timestamp: datetime
    resolved: bool = False
    resolved_at: datetime | None = None
    resolution: str | None = None


@dataclass(frozen=True)
class LedgerTotals:
    deployed: Decimal = _ZERO
    funded: Decimal = _ZERO
    returned: Decimal = _ZERO
    spent_on_cycles: Decimal = _ZERO
    claimed_base: Decimal = _ZERO
    claimed_reward: Decimal = _ZERO
    claimed_yield: Decimal = _ZERO
    swapped_base: Decimal = _ZERO
    swapped_reward: Decimal = _ZERO
    staked: Decimal = _ZERO
    unstaked: Decimal = _ZERO
    network_fees: Decimal = _ZERO
    protocol_fees: Decimal = _ZERO
    deploy_count: int = 0


def aggregate_totals(events: Iterable[LedgerEvent]) -> LedgerTotals:
    """Fold successful events into per-kind totals.

    ``deployed`` is funded minus returned; no other kind contributes to it. Fees are
    summed over every event, failed ones included, because a failed submission still pays.
    """
    sums: dict[LedgerEventKind, Decimal] = {}
    rewards: dict[LedgerEventKind, Decimal] = {}
    network_fees = _ZERO
    protocol_fees = _ZERO
    deploy_count = 0
    for event in events:
        network_fees += event.network_fee
        protocol_fees += event.protocol_fee
        if not event.succeeded:
            continue
        sums[event.kind] = sums.get(event.kind, _ZERO) + event.base_amount
        rewards[event.kind] = rewards.get(event.kind, _ZERO) + event.reward_token_amount
        if event.kind == LedgerEventKind.DEPLOY:
            deploy_count += 1

    funded = sums.get(LedgerEventKind.FUND_OPEN, _ZERO)
    returned = sums.get(LedgerEventKind.FUND_CLOSE, _ZERO)
    return LedgerTotals(
        deployed=funded - returned,
        funded=funded,
        returned=returned,
        spent_on_cycles=sums.get(LedgerEventKind.DEPLOY, _ZERO),
        claimed_base=sums.get(LedgerEventKind.CLAIM_BASE, _ZERO),
        claimed_reward=rewards.get(LedgerEventKind.CLAIM_REWARD_TOKEN, _ZERO),
        claimed_yield=rewards.get(LedgerEventKind.CLAIM_YIELD, _ZERO),
        swapped_base=sums.get(LedgerEventKind.SWAP, _ZERO),
        swapped_reward=rewards.get(LedgerEventKind.SWAP, _ZERO),
        staked=rewards.get(LedgerEventKind.STAKE, _ZERO),
        unstaked=rewards.get(LedgerEventKind.UNSTAKE, _ZERO),
        network_fees=network_fees,
        protocol_fees=protocol_fees,
        deploy_count=deploy_count,
    )


def is_stale(
    entry: InFlightDeployment,
    *,
    now: datetime,
    max_age_ms: int,
    current_cycle_id: int | None = None,
    max_cycle_distance: int | None = None,
) -> bool:
    if entry.resolved:
        return False
    age_ms = (ensure_utc(now) - ensure_utc(entry.timestamp)).total_seconds() * 1000
    if age_ms >= max_age_ms:
        return True
    if current_cycle_id is not None and max_cycle_distance is not None:
        return current_cycle_id - entry.cycle_id >= max_cycle_distance
    return False
