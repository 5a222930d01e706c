from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from decimal import Decimal

from orbbot.domain.models import (
    FundSnapshot,
    MinerState,
    Operation,
    PriceQuote,
    StakeState,
    SubmitResult,
    SwapResult,
    WalletBalances,
)


class RemoteOperationError(Exception):
    """Raised by adapters when a remote read or submission fails."""

    def __init__(self, message: str, *, signature: str | None = None) -> None:
        super().__init__(message)
        self.signature = signature


class TransientRemoteError(RemoteOperationError):
    """Timeout, rate limit or dropped connection; safe to retry."""


class AlreadyAppliedError(RemoteOperationError):
    """The operation's effect is already on chain (duplicate, already deployed)."""


class InsufficientStateError(RemoteOperationError):
    """Nothing to act on yet, e.g. rewards have not accrued enough to claim."""


class PreconditionError(RemoteOperationError):
    """Local preconditions are not met (budget floor, missing account or credentials)."""


class PriceUnavailableError(RemoteOperationError):
    """The price feed could not produce a usable quote."""


class ConfigurationError(ValueError):
    """Raised when required runtime configuration is missing or invalid."""


class GameGateway(ABC):
    """Port onto the on-chain reward game.

    Implementations own transport, account decoding and instruction encoding; callers only
    see decoded state and typed :class:`Operation` values.
    """

    @abstractmethod
    def get_current_cycle_id(self) -> int:
        raise NotImplementedError

    @abstractmethod
    def get_risk_parameter(self) -> Decimal:
        """Current jackpot size in reward tokens."""
        raise NotImplementedError

    def get_competition_total(self, cycle_id: int) -> Decimal | None:
        """Base currency committed to ``cycle_id`` by all participants, if observable."""
        del cycle_id
        return None

    @abstractmethod
    def get_fund(self) -> FundSnapshot | None:
        raise NotImplementedError

    @abstractmethod
    def get_miner(self) -> MinerState | None:
        raise NotImplementedError

    def get_stake(self) -> StakeState | None:
        return None

    @abstractmethod
    def get_wallet_balances(self) -> WalletBalances:
        raise NotImplementedError

    @abstractmethod
    def submit(self, operations: Sequence[Operation]) -> SubmitResult:
        """Submit operations atomically and wait for confirmation."""
        raise NotImplementedError

    def close(self) -> None:
        return None


class SwapService(ABC):
    @abstractmethod
    def swap(self, amount_in: Decimal, slippage_bps_max: int) -> SwapResult:
        """Swap reward tokens into base currency."""
        raise NotImplementedError

    def close(self) -> None:
        return None


class PriceFeed(ABC):
    @abstractmethod
    def get_price(self) -> PriceQuote:
        raise NotImplementedError

    def close(self) -> None:
        return None
