from __future__ import annotations

from collections.abc import Callable

from quote_lake.core.config import SUPPORTED_EXCHANGES, Settings
from quote_lake.core.errors import ConfigurationError
from quote_lake.sources.rest import BootstrapEndpoint, ExchangeRESTClient

from . import bitfinex, bitget, bybit, gateio, htx, kraken, kucoin, mexc
from .base import ExchangeFeed

_STATIC_FEEDS: dict[str, Callable[[], ExchangeFeed]] = {
    bitfinex.EXCHANGE: bitfinex.build_feed,
    bitget.EXCHANGE: bitget.build_feed,
    bybit.EXCHANGE: bybit.build_feed,
    gateio.EXCHANGE: gateio.build_feed,
    htx.EXCHANGE: htx.build_feed,
    kraken.EXCHANGE: kraken.build_feed,
    mexc.EXCHANGE: mexc.build_feed,
}


def kucoin_bootstrap(settings: Settings) -> Callable[[], BootstrapEndpoint]:
    def _resolve() -> BootstrapEndpoint:
        client = ExchangeRESTClient(
            base_url=settings.kucoin_rest_base_url,
            timeout_seconds=settings.rest_timeout_seconds,
            retries=settings.rest_max_retries,
        )
        try:
            return client.fetch_kucoin_public_endpoint()
        finally:
            client.close()

    return _resolve


def build_feed(exchange: str, settings: Settings) -> ExchangeFeed:
    name = exchange.strip().upper()
    if name == kucoin.EXCHANGE:
        return kucoin.build_feed(bootstrap=kucoin_bootstrap(settings))
    factory = _STATIC_FEEDS.get(name)
    if factory is None:
        raise ConfigurationError(f"unknown exchange {exchange!r}; expected one of {', '.join(SUPPORTED_EXCHANGES)}")
    return factory()


def build_feeds(settings: Settings, exchanges: list[str] | None = None) -> list[ExchangeFeed]:
    return [build_feed(name, settings) for name in (exchanges or settings.exchanges)]
