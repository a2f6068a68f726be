from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from typing import Any

import httpx
import websockets
from websockets.exceptions import InvalidURI, WebSocketException

from quote_lake.core.enums import ConnectionState, FailureClass, FrameKind
from quote_lake.core.errors import ConfigurationError, ExchangeRequestedReconnect, NormalizationError
from quote_lake.core.time_utils import now_ms
from quote_lake.feeds.base import DecodedFrame, ExchangeFeed
from quote_lake.writer.timeseries import TimeSeriesQuoteWriter

from .heartbeat import HeartbeatTimer

logger = logging.getLogger(__name__)

PAYLOAD_PREVIEW_CHARS = 500
TRANSPORT_PING_PAYLOAD = b"ping"

Connector = Callable[[str], AbstractAsyncContextManager[Any]]

_FATAL_ERRORS: tuple[type[BaseException], ...] = (ConfigurationError, InvalidURI)
_RECOVERABLE_ERRORS: tuple[type[BaseException], ...] = (
    WebSocketException,
    OSError,
    TimeoutError,
    httpx.HTTPError,
    ExchangeRequestedReconnect,
)


def classify_failure(exc: BaseException) -> FailureClass:
    if isinstance(exc, _FATAL_ERRORS):
        return FailureClass.FATAL
    if isinstance(exc, _RECOVERABLE_ERRORS):
        return FailureClass.RECOVERABLE
    return FailureClass.FATAL


def websocket_connector(*, open_timeout_seconds: float = 10.0) -> Connector:
    def _connect(url: str) -> AbstractAsyncContextManager[Any]:
        # liveness is driven by each exchange's heartbeat policy, not the library keepalive
        return websockets.connect(
            url,
            ping_interval=None,
            ping_timeout=None,
            open_timeout=open_timeout_seconds,
            close_timeout=5,
            max_size=2**22,
        )

    return _connect


@dataclass(slots=True)
class ReconnectPolicy:
    max_attempts: int = 5
    base_seconds: float = 1.0
    attempt: int = 0

    def next_delay(self) -> float | None:
        if self.attempt >= self.max_attempts:
            return None
        delay = self.base_seconds * (2**self.attempt)
        self.attempt += 1
        return delay

    def reset(self) -> None:
        self.attempt = 0

    def schedule(self) -> tuple[float, ...]:
        return tuple(self.base_seconds * (2**attempt) for attempt in range(self.max_attempts))


@dataclass(slots=True)
class Session:
    connection: Any
    endpoint: str
    heartbeat: HeartbeatTimer
    opened_after_attempts: int = 0
    acknowledged: bool = False
    channel_id: int | None = None
    frames_received: int = 0


@dataclass(frozen=True, slots=True)
class SupervisorSummary:
    exchange: str
    state: ConnectionState
    quotes_accepted: int
    frames_discarded: int
    sessions_opened: int
    error: str | None = None


def _preview(payload: Any) -> str:
    rendered = payload if isinstance(payload, str) else repr(payload)
    if len(rendered) > PAYLOAD_PREVIEW_CHARS:
        return f"{rendered[:PAYLOAD_PREVIEW_CHARS]}..."
    return rendered


class QuoteFeedSupervisor:
    """Owns one exchange's websocket session from connect to abort.

    Frames are read one at a time and fully handled (decode, normalize, write,
    heartbeat check) before the next read. Recoverable failures reconnect with
    exponential backoff; a fresh ``Session`` replaces the old one on every attempt.
    """

    def __init__(
        self,
        *,
        feed: ExchangeFeed,
        writer: TimeSeriesQuoteWriter,
        reconnect_policy: ReconnectPolicy | None = None,
        connector: Connector | None = None,
        read_timeout_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        wall_clock_ms: Callable[[], int] = now_ms,
        wait: Callable[[float], bool] | None = None,
    ) -> None:
        self._feed = feed
        self._writer = writer
        self._policy = reconnect_policy or ReconnectPolicy()
        self._connector = connector or websocket_connector()
        self._read_timeout_seconds = read_timeout_seconds
        self._clock = clock
        self._wall_clock_ms = wall_clock_ms
        self._stop_event = threading.Event()
        self._wait = wait or self._stop_event.wait
        self._thread: threading.Thread | None = None

        self._state = ConnectionState.CONNECTING
        self._session: Session | None = None
        self._quotes_accepted = 0
        self._frames_discarded = 0
        self._sessions_opened = 0
        self._error: BaseException | None = None

    @property
    def exchange(self) -> str:
        return self._feed.exchange

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def error(self) -> BaseException | None:
        return self._error

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._thread_main,
            name=f"quote-feed-{self.exchange.lower()}",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def summary(self) -> SupervisorSummary:
        return SupervisorSummary(
            exchange=self.exchange,
            state=self._state,
            quotes_accepted=self._quotes_accepted,
            frames_discarded=self._frames_discarded,
            sessions_opened=self._sessions_opened,
            error=repr(self._error) if self._error is not None else None,
        )

    def _thread_main(self) -> None:
        try:
            self.run()
        except Exception as exc:  # pylint: disable=broad-except
            self._error = exc

    def run(self) -> SupervisorSummary:
        context = {"exchange": self.exchange}
        logger.info("Starting quote feed", extra=context)

        with asyncio.Runner() as runner:
            while not self._stop_event.is_set():
                self._state = ConnectionState.CONNECTING
                try:
                    runner.run(self._run_session())
                except Exception as exc:
                    if classify_failure(exc) is FailureClass.FATAL:
                        self._state = ConnectionState.ABORTED
                        self._error = exc
                        logger.exception("Quote feed hit a non-recoverable error", extra=context)
                        raise
                    logger.warning(
                        "Quote feed session failed",
                        extra={**context, "error": repr(exc), "failures": self._policy.attempt + 1},
                    )
                finally:
                    self._session = None

                if self._stop_event.is_set():
                    break

                delay = self._policy.next_delay()
                if delay is None:
                    self._state = ConnectionState.ABORTED
                    logger.error(
                        "Reconnect attempts exhausted; stopping quote feed",
                        extra={**context, "max_attempts": self._policy.max_attempts},
                    )
                    return self.summary()

                logger.info(
                    "Reconnecting quote feed",
                    extra={
                        **context,
                        "attempt": self._policy.attempt,
                        "max_attempts": self._policy.max_attempts,
                        "sleep_seconds": delay,
                    },
                )
                if self._wait(delay):
                    break

        self._state = ConnectionState.STOPPED
        logger.info("Quote feed stopped", extra={**context, "quotes_accepted": self._quotes_accepted})
        return self.summary()

    async def _run_session(self) -> None:
        descriptor = self._feed.descriptor
        endpoint = descriptor.resolve_endpoint()
        interval = endpoint.ping_interval_seconds
        if interval is None:
            interval = descriptor.heartbeat.interval_seconds

        async with self._connector(endpoint.url) as connection:
            session = Session(
                connection=connection,
                endpoint=endpoint.url,
                heartbeat=HeartbeatTimer(interval, clock=self._clock),
                opened_after_attempts=self._policy.attempt,
            )
            self._session = session
            self._sessions_opened += 1
            logger.info(
                "Connected to exchange",
                extra={"exchange": self.exchange, "endpoint": descriptor.endpoint or "bootstrap"},
            )

            self._state = ConnectionState.SUBSCRIBING
            for frame in self._feed.codec.encode_subscribe(descriptor):
                await connection.send(frame)
            logger.info("Sent subscription", extra={"exchange": self.exchange, "instrument": descriptor.instrument})
            self._policy.reset()

            self._state = ConnectionState.STREAMING
            while not self._stop_event.is_set():
                try:
                    frame = await asyncio.wait_for(connection.recv(), timeout=self._read_timeout_seconds)
                except TimeoutError:
                    frame = None

                if frame is not None:
                    await self._handle_frame(session, frame)
                await self._check_heartbeat(session)

            self._state = ConnectionState.CLOSING

    async def _handle_frame(self, session: Session, frame: str | bytes) -> None:
        session.frames_received += 1
        try:
            decoded = self._feed.codec.decode(frame)
        except Exception:  # pylint: disable=broad-except
            self._frames_discarded += 1
            logger.exception(
                "Discarding frame the codec failed on",
                extra={"exchange": self.exchange, "payload": _preview(frame)},
            )
            return
        kind = decoded.kind

        if kind is FrameKind.TICKER:
            self._handle_ticker(session, decoded)
        elif kind is FrameKind.PING:
            reply = self._feed.codec.encode_pong(decoded.payload)
            if reply is not None:
                await session.connection.send(reply)
            logger.debug("Answered exchange ping", extra={"exchange": self.exchange})
        elif kind is FrameKind.PONG or kind is FrameKind.HEARTBEAT:
            logger.debug("Received %s", kind, extra={"exchange": self.exchange, "detail": decoded.detail})
        elif kind is FrameKind.ACK:
            session.acknowledged = True
            if decoded.channel_id is not None:
                session.channel_id = decoded.channel_id
            logger.info(
                "Subscription acknowledged",
                extra={"exchange": self.exchange, "channel_id": session.channel_id},
            )
        elif kind is FrameKind.ERROR:
            logger.error(
                "Exchange reported an error",
                extra={"exchange": self.exchange, "detail": decoded.detail, "payload": _preview(decoded.payload)},
            )
        elif kind is FrameKind.CLOSE:
            raise ExchangeRequestedReconnect(decoded.detail or f"{self.exchange} asked the client to reconnect")
        else:
            self._frames_discarded += 1
            logger.warning(
                "Discarding unrecognized frame",
                extra={"exchange": self.exchange, "reason": decoded.detail, "payload": _preview(decoded.payload)},
            )

    def _handle_ticker(self, session: Session, decoded: DecodedFrame) -> None:
        if decoded.channel_id is not None and decoded.channel_id != session.channel_id:
            self._frames_discarded += 1
            logger.debug(
                "Ignoring data for an unknown channel",
                extra={"exchange": self.exchange, "channel_id": decoded.channel_id, "expected": session.channel_id},
            )
            return

        try:
            quote = self._feed.normalizer(decoded.payload, received_at_ms=self._wall_clock_ms())
        except NormalizationError as exc:
            self._frames_discarded += 1
            logger.warning(
                "Discarding ticker that failed normalization",
                extra={"exchange": self.exchange, "reason": str(exc), "payload": _preview(decoded.payload)},
            )
            return
        except Exception:  # pylint: disable=broad-except
            self._frames_discarded += 1
            logger.exception(
                "Discarding ticker the normalizer failed on",
                extra={"exchange": self.exchange, "payload": _preview(decoded.payload)},
            )
            return

        self._writer.write(quote)
        self._quotes_accepted += 1
        session.heartbeat.touch()

    async def _check_heartbeat(self, session: Session) -> None:
        if not session.heartbeat.due():
            return
        frame = self._feed.codec.encode_ping()
        if frame is None:
            await session.connection.ping(TRANSPORT_PING_PAYLOAD)
        else:
            await session.connection.send(frame)
        session.heartbeat.touch()
        logger.debug("Sent heartbeat", extra={"exchange": self.exchange})
