from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from quote_lake.core.config import Settings
from quote_lake.core.enums import ConnectionState
from quote_lake.feeds.base import ExchangeFeed
from quote_lake.feeds.registry import build_feeds
from quote_lake.writer.timeseries import TimeSeriesQuoteWriter, create_redis_client

from .supervisor import QuoteFeedSupervisor, ReconnectPolicy, websocket_connector

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 1.0
SHUTDOWN_JOIN_SECONDS = 10.0


@dataclass(frozen=True, slots=True)
class PipelineSummary:
    exchange: str
    state: ConnectionState
    quotes_accepted: int
    points_written: int
    points_failed: int
    frames_discarded: int
    sessions_opened: int
    error: str | None = None


class QuoteIngestionOrchestrator:
    """Runs one independent pipeline per exchange until all stop or abort.

    Each pipeline gets its own store client and writer so a failing exchange
    never shares state with the others.
    """

    def __init__(
        self,
        settings: Settings,
        feeds: list[ExchangeFeed] | None = None,
        client_factory: Callable[[Settings], Any] | None = None,
        supervisor_factory: Callable[[ExchangeFeed, TimeSeriesQuoteWriter], QuoteFeedSupervisor] | None = None,
    ) -> None:
        self._settings = settings
        self._feeds = feeds if feeds is not None else build_feeds(settings)
        self._client_factory = client_factory or create_redis_client
        self._supervisor_factory = supervisor_factory or self._default_supervisor
        self._writers: dict[str, TimeSeriesQuoteWriter] = {}
        self._supervisors: dict[str, QuoteFeedSupervisor] = {}
        self._stop_event = threading.Event()

    def _default_supervisor(self, feed: ExchangeFeed, writer: TimeSeriesQuoteWriter) -> QuoteFeedSupervisor:
        return QuoteFeedSupervisor(
            feed=feed,
            writer=writer,
            reconnect_policy=ReconnectPolicy(
                max_attempts=self._settings.max_reconnect_attempts,
                base_seconds=self._settings.reconnect_base_seconds,
            ),
            connector=websocket_connector(open_timeout_seconds=self._settings.open_timeout_seconds),
            read_timeout_seconds=self._settings.read_timeout_seconds,
        )

    def start(self) -> None:
        for feed in self._feeds:
            writer = TimeSeriesQuoteWriter(
                self._client_factory(self._settings),
                pair=self._settings.series_pair,
                retention_ms=self._settings.retention_ms,
            )
            supervisor = self._supervisor_factory(feed, writer)
            self._writers[feed.exchange] = writer
            self._supervisors[feed.exchange] = supervisor
            supervisor.start()
            logger.info("Started exchange pipeline", extra={"exchange": feed.exchange})

    def request_stop(self) -> None:
        self._stop_event.set()

    def wait(self, poll_seconds: float = POLL_INTERVAL_SECONDS) -> None:
        while not self._stop_event.is_set():
            if not any(supervisor.is_alive() for supervisor in self._supervisors.values()):
                logger.info("All exchange pipelines have finished")
                return
            self._stop_event.wait(poll_seconds)

    def stop(self, join_seconds: float = SHUTDOWN_JOIN_SECONDS) -> None:
        for supervisor in self._supervisors.values():
            supervisor.stop()
        for exchange, supervisor in self._supervisors.items():
            supervisor.join(timeout=join_seconds)
            if supervisor.is_alive():
                logger.warning("Exchange pipeline did not stop in time", extra={"exchange": exchange})

    def close(self) -> None:
        for writer in self._writers.values():
            writer.close()

    def run(self) -> list[PipelineSummary]:
        self.start()
        try:
            self.wait()
        finally:
            self.stop()
            self.close()
        return self.summaries()

    def summaries(self) -> list[PipelineSummary]:
        rows: list[PipelineSummary] = []
        for exchange, supervisor in self._supervisors.items():
            writer = self._writers[exchange]
            summary = supervisor.summary()
            rows.append(
                PipelineSummary(
                    exchange=exchange,
                    state=summary.state,
                    quotes_accepted=summary.quotes_accepted,
                    points_written=writer.points_written,
                    points_failed=writer.points_failed,
                    frames_discarded=summary.frames_discarded,
                    sessions_opened=summary.sessions_opened,
                    error=summary.error,
                )
            )
        return rows
