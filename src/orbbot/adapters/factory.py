from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass

from orbbot.adapters.dry_run_game import DryRunGameGateway, DryRunSwapService
from orbbot.adapters.game import ConfigurationError, GameGateway, PriceFeed, SwapService
from orbbot.adapters.price_feed import HttpPriceFeed, StaticPriceFeed
from orbbot.config import Settings

logger = logging.getLogger(__name__)

_BAD_FACTORY_RESULT = "GAME_ADAPTER_FACTORY must return a (GameGateway, SwapService) pair"


@dataclass(frozen=True)
class GameAdapters:
    gateway: GameGateway
    swap_service: SwapService
    price_feed: PriceFeed

    def close(self) -> None:
        for name, resource in (
            ("price_feed", self.price_feed),
            ("swap_service", self.swap_service),
            ("gateway", self.gateway),
        ):
            _close_best_effort(resource, name)


def _close_best_effort(resource: object, label: str) -> None:
    close = getattr(resource, "close", None)
    if not callable(close):
        return
    try:
        close()
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "adapter_close_failed",
            extra={"extra": {"resource": label, "error_type": type(exc).__name__}},
        )


def load_factory(spec: str):
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError(
            f"GAME_ADAPTER_FACTORY must look like 'package.module:callable', got {spec!r}"
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError(f"cannot import game adapter module {module_name!r}") from exc
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ConfigurationError(f"{spec!r} is not a callable")
    return factory


def build_adapters(settings: Settings) -> GameAdapters:
    if settings.dry_run:
        gateway = DryRunGameGateway(
            wallet_balance=settings.dry_run_wallet_balance,
            risk_parameter=settings.dry_run_motherload,
            cycle_seconds=settings.dry_run_cycle_seconds,
        )
        logger.info(
            "dry_run_adapters_built",
            extra={"extra": {"wallet_balance": str(settings.dry_run_wallet_balance)}},
        )
        return GameAdapters(
            gateway=gateway,
            swap_service=DryRunSwapService(gateway, settings.dry_run_reward_price),
            price_feed=StaticPriceFeed(settings.dry_run_reward_price),
        )

    factory = load_factory(settings.game_adapter_factory or "")
    if not settings.reward_token_mint:
        raise ConfigurationError("ORB_TOKEN_MINT is required when DRY_RUN=false")
    built = factory(settings)
    try:
        gateway, swap_service = built
    except (TypeError, ValueError) as exc:
        _close_best_effort(built, "factory_result")
        raise ConfigurationError(_BAD_FACTORY_RESULT) from exc
    if not isinstance(gateway, GameGateway) or not isinstance(swap_service, SwapService):
        _close_best_effort(swap_service, "swap_service")
        _close_best_effort(gateway, "gateway")
        raise ConfigurationError(_BAD_FACTORY_RESULT)
    price_feed = HttpPriceFeed(
        api_url=settings.price_api_url,
        reward_token_mint=settings.reward_token_mint,
        base_token_mint=settings.base_token_mint,
        timeout=settings.price_timeout_seconds,
    )
    logger.info("live_adapters_built", extra={"extra": {"factory": settings.game_adapter_factory}})
    return GameAdapters(gateway=gateway, swap_service=swap_service, price_feed=price_feed)
