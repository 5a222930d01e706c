from __future__ import annotations

import logging
from collections.abc import Callable
from decimal import Decimal, InvalidOperation

import httpx

from orbbot.adapters.game import PriceFeed, PriceUnavailableError
from orbbot.domain.models import PriceQuote
from orbbot.security.redaction import sanitize_text
from orbbot.services.retry import retry_with_backoff

logger = logging.getLogger(__name__)

_RETRY_ATTEMPTS = 3
_RETRY_BASE_DELAY_MS = 400
_RETRY_MAX_DELAY_MS = 4_000
_RETRY_TOTAL_WAIT_CAP_SECONDS = 8.0


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, httpx.TimeoutException):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code == 429 or exc.response.status_code >= 500
    return isinstance(exc, httpx.TransportError)


def _retry_after(exc: Exception) -> str | None:
    response = getattr(exc, "response", None)
    if response is None:
        return None
    return response.headers.get("Retry-After")


def _parse_price(payload: object, mint: str) -> Decimal:
    if not isinstance(payload, dict):
        raise PriceUnavailableError("price response must be a JSON object")
    data = payload.get("data")
    entry = data.get(mint) if isinstance(data, dict) else None
    if not isinstance(entry, dict) or entry.get("price") is None:
        raise PriceUnavailableError(f"no price for mint {mint}")
    try:
        price = Decimal(str(entry["price"]))
    except InvalidOperation as exc:
        raise PriceUnavailableError(f"malformed price for mint {mint}") from exc
    if not price.is_finite() or price <= 0:
        raise PriceUnavailableError(f"non-positive price for mint {mint}")
    return price


class HttpPriceFeed(PriceFeed):
    """Reward-token price from a Jupiter-style ``/price`` endpoint.

    The base-currency price is requested with ``vsToken`` set to the base mint; the quote
    (USD) price is the endpoint's default denomination.
    """

    def __init__(
        self,
        *,
        api_url: str,
        reward_token_mint: str,
        base_token_mint: str,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
        sleep_fn: Callable[[float], None] | None = None,
    ) -> None:
        self.reward_token_mint = reward_token_mint
        self.base_token_mint = base_token_mint
        self.client = httpx.Client(
            timeout=httpx.Timeout(timeout=timeout, connect=5.0),
            transport=transport,
            headers={"Accept": "application/json"},
        )
        self._api_url = api_url
        self._sleep_fn = sleep_fn

    def get_price(self) -> PriceQuote:
        price_in_quote = self._fetch({"ids": self.reward_token_mint})
        price_in_base = self._fetch(
            {"ids": self.reward_token_mint, "vsToken": self.base_token_mint}
        )
        return PriceQuote(price_in_base=price_in_base, price_in_quote=price_in_quote)

    def _fetch(self, params: dict[str, str]) -> Decimal:
        def _call() -> Decimal:
            response = self.client.get(self._api_url, params=params)
            if response.status_code == 429 or response.status_code >= 500:
                response.raise_for_status()
            if response.status_code >= 400:
                raise PriceUnavailableError(
                    f"price endpoint error status={response.status_code} "
                    f"body={sanitize_text(response.text[:200])}"
                )
            try:
                payload = response.json()
            except ValueError as exc:
                raise PriceUnavailableError("price response is not JSON") from exc
            return _parse_price(payload, self.reward_token_mint)

        def _on_retry(attempt: object) -> None:
            logger.warning(
                "price_fetch_retrying",
                extra={"extra": {"attempt": getattr(attempt, "attempt", None)}},
            )

        try:
            return retry_with_backoff(
                _call,
                max_attempts=_RETRY_ATTEMPTS,
                base_delay_ms=_RETRY_BASE_DELAY_MS,
                max_delay_ms=_RETRY_MAX_DELAY_MS,
                jitter_seed=23,
                retry_if=_is_retryable,
                retry_after_getter=_retry_after,
                max_total_sleep_seconds=_RETRY_TOTAL_WAIT_CAP_SECONDS,
                on_retry=_on_retry,
                sleep_fn=self._sleep_fn,
            )
        except httpx.HTTPError as exc:
            raise PriceUnavailableError(f"price endpoint unreachable: {type(exc).__name__}") from exc

    def close(self) -> None:
        self.client.close()


class StaticPriceFeed(PriceFeed):
    """Fixed quote for dry runs and tests."""

    def __init__(self, price_in_base: Decimal, price_in_quote: Decimal | None = None) -> None:
        self._quote = PriceQuote(
            price_in_base=price_in_base,
            price_in_quote=price_in_quote if price_in_quote is not None else price_in_base,
        )

    def get_price(self) -> PriceQuote:
        return self._quote
