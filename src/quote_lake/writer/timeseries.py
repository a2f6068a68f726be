from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import redis
from redis.exceptions import RedisError

from quote_lake.core.config import Settings
from quote_lake.core.quote import DEFAULT_PAIR, Quote, SeriesKey, series_keys

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_MS = 3_600_000
KEEP_LAST = "last"


@dataclass(frozen=True, slots=True)
class QuoteWriteResult:
    observed_at: int
    written: tuple[str, ...]
    failed: tuple[str, ...]

    @property
    def complete(self) -> bool:
        return not self.failed


def create_redis_client(settings: Settings) -> redis.Redis:
    return redis.Redis.from_url(
        settings.redis_url(),
        socket_timeout=settings.redis_socket_timeout_seconds,
        socket_connect_timeout=settings.redis_socket_timeout_seconds,
        health_check_interval=30,
        retry_on_timeout=True,
        decode_responses=True,
    )


class TimeSeriesQuoteWriter:
    """Appends each quote to its four RedisTimeSeries series.

    ``TS.ADD`` creates a missing series with the retention, labels and keep-last
    duplicate policy given here, so series come into existence on first write.
    Writes are at-most-once: a failed point is logged and dropped.
    """

    def __init__(
        self,
        client: Any,
        *,
        pair: str = DEFAULT_PAIR,
        retention_ms: int = DEFAULT_RETENTION_MS,
    ) -> None:
        self._client = client
        self._pair = pair
        self._retention_ms = retention_ms
        self._series_cache: dict[str, tuple[SeriesKey, ...]] = {}
        self.points_written = 0
        self.points_failed = 0

    def series_for(self, exchange: str) -> tuple[SeriesKey, ...]:
        cached = self._series_cache.get(exchange)
        if cached is None:
            cached = series_keys(exchange, pair=self._pair)
            self._series_cache[exchange] = cached
        return cached

    def write(self, quote: Quote) -> QuoteWriteResult:
        written: list[str] = []
        failed: list[str] = []
        timeseries = self._client.ts()

        for key in self.series_for(quote.exchange):
            value = quote.value_for(key.side, key.metric)
            try:
                timeseries.add(
                    key.name,
                    quote.observed_at,
                    value,
                    retention_msecs=self._retention_ms,
                    labels=key.labels,
                    duplicate_policy=KEEP_LAST,
                )
            except RedisError as exc:
                failed.append(key.name)
                self.points_failed += 1
                logger.error(
                    "Failed to add quote point",
                    extra={
                        "exchange": quote.exchange,
                        "series": key.name,
                        "timestamp_ms": quote.observed_at,
                        "value": value,
                        "error": str(exc),
                    },
                )
                continue
            written.append(key.name)
            self.points_written += 1

        return QuoteWriteResult(observed_at=quote.observed_at, written=tuple(written), failed=tuple(failed))

    def ping(self) -> bool:
        return bool(self._client.ping())

    def close(self) -> None:
        self._client.close()
