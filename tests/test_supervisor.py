from __future__ import annotations

import gzip
import json

import httpx
import pytest
from fakes import FakeClock, FakeConnection, FakeRedis, RecordingWait, ScriptedConnector

from quote_lake.core.enums import ConnectionState, FailureClass
from quote_lake.core.errors import ConfigurationError, ExchangeRequestedReconnect
from quote_lake.feeds import bitfinex, bitget, gateio, htx, kraken, kucoin, mexc
from quote_lake.feeds.base import DecodedFrame, ExchangeFeed, HeartbeatPolicy, SubscriptionDescriptor
from quote_lake.pipeline.supervisor import QuoteFeedSupervisor, ReconnectPolicy, classify_failure
from quote_lake.sources.rest import BootstrapEndpoint, BootstrapResponseError, ExchangeRESTClient
from quote_lake.writer.timeseries import TimeSeriesQuoteWriter

RECEIVED_AT_MS = 1_700_000_000_000


def _kraken_ticker(bid: float = 50_000.1, ask: float = 50_000.2) -> str:
    return json.dumps(
        {
            "channel": "ticker",
            "type": "update",
            "data": [{"symbol": "BTC/USD", "bid": bid, "bid_qty": 1.5, "ask": ask, "ask_qty": 2.0}],
        }
    )


def _mexc_ticker(send_time: int) -> str:
    return json.dumps(
        {
            "c": "spot@public.bookTicker.v3.api@BTCUSDT",
            "publicbookticker": {
                "bidprice": "43000.1",
                "bidquantity": "0.5",
                "askprice": "43000.2",
                "askquantity": "0.7",
            },
            "symbol": "BTCUSDT",
            "sendtime": send_time,
        }
    )


def _make_supervisor(
    feed: ExchangeFeed,
    connections: list[FakeConnection | BaseException],
    *,
    redis: FakeRedis | None = None,
    clock: FakeClock | None = None,
) -> tuple[QuoteFeedSupervisor, FakeRedis, ScriptedConnector, RecordingWait]:
    redis = redis or FakeRedis()
    connector = ScriptedConnector(connections)
    wait = RecordingWait()
    supervisor = QuoteFeedSupervisor(
        feed=feed,
        writer=TimeSeriesQuoteWriter(redis),
        reconnect_policy=ReconnectPolicy(max_attempts=5, base_seconds=1.0),
        connector=connector,
        clock=clock or FakeClock(),
        wall_clock_ms=lambda: RECEIVED_AT_MS,
        wait=wait,
    )
    for item in connections:
        if isinstance(item, FakeConnection) and item.on_exhausted is None:
            item.on_exhausted = supervisor.stop
    return supervisor, redis, connector, wait


def test_ticker_is_written_to_four_series_at_receive_time() -> None:
    connection = FakeConnection([json.dumps({"method": "subscribe", "success": True}), _kraken_ticker()])
    supervisor, redis, connector, wait = _make_supervisor(kraken.build_feed(), [connection])

    summary = supervisor.run()

    assert connector.urls == [kraken.KRAKEN_WS_API]
    assert json.loads(connection.sent[0])["params"]["symbol"] == ["BTC/USD"]
    assert redis.series == {
        "KRAKEN:XBTUSD:QUOTE:BUY:PRICE": {RECEIVED_AT_MS: 50_000.1},
        "KRAKEN:XBTUSD:QUOTE:BUY:VOL": {RECEIVED_AT_MS: 1.5},
        "KRAKEN:XBTUSD:QUOTE:SELL:PRICE": {RECEIVED_AT_MS: 50_000.2},
        "KRAKEN:XBTUSD:QUOTE:SELL:VOL": {RECEIVED_AT_MS: 2.0},
    }
    assert summary.state is ConnectionState.STOPPED
    assert summary.quotes_accepted == 1
    assert wait.delays == []


def test_aggregate_volume_is_split_evenly_across_sides() -> None:
    frame = json.dumps(
        {
            "time": 1_700_000_000,
            "time_ms": 1_700_000_000_123,
            "channel": "spot.tickers",
            "event": "update",
            "result": {"currency_pair": "BTC_USDT", "highest_bid": "42000", "lowest_ask": "42001", "base_volume": "10"},
        }
    )
    supervisor, redis, _, _ = _make_supervisor(gateio.build_feed(), [FakeConnection([frame])])

    supervisor.run()

    assert redis.series["GATEIO:XBTUSD:QUOTE:BUY:VOL"] == {1_700_000_000_123: 5.0}
    assert redis.series["GATEIO:XBTUSD:QUOTE:SELL:VOL"] == {1_700_000_000_123: 5.0}
    assert redis.series["GATEIO:XBTUSD:QUOTE:BUY:PRICE"] == {1_700_000_000_123: 42000.0}


def test_bitfinex_only_accepts_data_for_acknowledged_channel() -> None:
    script = [
        json.dumps([17, [1.0, 1.0, 2.0, 2.0, 0, 0, 0, 0, 0, 0]]),
        json.dumps({"event": "subscribed", "channel": "ticker", "chanId": 17, "symbol": "tBTCUSD"}),
        json.dumps([99, [9.0, 9.0, 9.5, 9.0, 0, 0, 0, 0, 0, 0]]),
        json.dumps([17, "hb"]),
        json.dumps([17, [42000.5, 3.2, 42001.0, 1.1, 0, 0, 0, 0, 0, 0]]),
    ]
    supervisor, redis, _, _ = _make_supervisor(bitfinex.build_feed(), [FakeConnection(script)])

    summary = supervisor.run()

    assert summary.quotes_accepted == 1
    assert summary.frames_discarded == 2
    assert redis.series["BITFINEX:XBTUSD:QUOTE:BUY:PRICE"] == {RECEIVED_AT_MS: 42000.5}
    assert redis.series["BITFINEX:XBTUSD:QUOTE:SELL:VOL"] == {RECEIVED_AT_MS: 1.1}


def test_htx_gzip_ping_is_answered_with_matching_pong() -> None:
    ping = gzip.compress(b'{"ping":1492420473027}')
    ticker = gzip.compress(
        json.dumps(
            {
                "ch": "market.btcusdt.ticker",
                "ts": 1_700_000_000_500,
                "tick": {"bid": 42000.0, "bidSize": 0.1, "ask": 42000.5, "askSize": 0.2, "vol": 8.0},
            }
        ).encode()
    )
    connection = FakeConnection([ping, ticker])
    supervisor, redis, _, _ = _make_supervisor(htx.build_feed(), [connection])

    supervisor.run()

    assert connection.sent[1] == '{"pong":1492420473027}'
    assert redis.series["HTX:XBTUSD:QUOTE:BUY:VOL"] == {1_700_000_000_500: 4.0}


def test_idle_session_sends_one_heartbeat_per_interval() -> None:
    clock = FakeClock()
    connection = FakeConnection([None] * 9, clock=clock)
    supervisor, _, _, _ = _make_supervisor(mexc.build_feed(), [connection], clock=clock)

    supervisor.run()

    assert connection.sent[1:] == [mexc.PING_FRAME]


def test_idle_session_sends_second_heartbeat_after_another_interval() -> None:
    clock = FakeClock()
    connection = FakeConnection([None] * 10, clock=clock)
    supervisor, _, _, _ = _make_supervisor(mexc.build_feed(), [connection], clock=clock)

    supervisor.run()

    assert connection.sent[1:] == [mexc.PING_FRAME, mexc.PING_FRAME]


def test_accepted_quote_resets_idle_timer() -> None:
    clock = FakeClock()
    script = [None, None, None, None, _mexc_ticker(1_700_000_000_000), None, None, None, None]
    connection = FakeConnection(script, clock=clock)
    supervisor, _, _, _ = _make_supervisor(mexc.build_feed(), [connection], clock=clock)

    supervisor.run()

    assert mexc.PING_FRAME not in connection.sent


def test_transport_ping_is_used_when_codec_has_no_ping_frame() -> None:
    clock = FakeClock()
    connection = FakeConnection([None] * 5, clock=clock)
    supervisor, _, _, _ = _make_supervisor(bitget.build_feed(), [connection], clock=clock)

    supervisor.run()

    assert connection.pings == [b"ping"]


def test_protocol_driven_heartbeat_never_pings_on_its_own() -> None:
    clock = FakeClock()
    connection = FakeConnection([None] * 120, clock=clock)
    supervisor, _, _, _ = _make_supervisor(htx.build_feed(), [connection], clock=clock)

    supervisor.run()

    assert not htx.build_feed().descriptor.heartbeat.supervisor_driven
    assert connection.pings == []
    assert len(connection.sent) == 1


def test_bootstrap_ping_interval_overrides_descriptor_default() -> None:
    endpoint = BootstrapEndpoint(url="wss://ws-api-spot.kucoin.com/?token=abc&connectId=1", ping_interval_seconds=2.0)
    clock = FakeClock()
    connection = FakeConnection([None, None], clock=clock)
    supervisor, _, connector, _ = _make_supervisor(
        kucoin.build_feed(bootstrap=lambda: endpoint),
        [connection],
        clock=clock,
    )

    supervisor.run()

    assert connector.urls == [endpoint.url]
    assert [json.loads(frame)["type"] for frame in connection.sent] == ["subscribe", "ping"]


def test_malformed_frames_are_discarded_without_ending_session() -> None:
    script = [
        "not json at all",
        json.dumps({"channel": "ticker", "data": [{"bid": "abc", "bid_qty": 1, "ask": 2, "ask_qty": 1}]}),
        json.dumps({"channel": "ticker", "data": [{"bid": -1, "bid_qty": 1, "ask": 2, "ask_qty": 1}]}),
        _kraken_ticker(bid=100.0, ask=101.0),
    ]
    supervisor, redis, _, wait = _make_supervisor(kraken.build_feed(), [FakeConnection(script)])

    summary = supervisor.run()

    assert summary.frames_discarded == 3
    assert summary.quotes_accepted == 1
    assert summary.sessions_opened == 1
    assert wait.delays == []
    assert redis.series["KRAKEN:XBTUSD:QUOTE:BUY:PRICE"] == {RECEIVED_AT_MS: 100.0}


def test_backoff_doubles_and_aborts_after_fifth_retry() -> None:
    failures = [OSError(f"connection refused #{index}") for index in range(6)]
    supervisor, _, connector, wait = _make_supervisor(kraken.build_feed(), failures)

    summary = supervisor.run()

    assert wait.delays == [1.0, 2.0, 4.0, 8.0, 16.0]
    assert len(connector.urls) == 6
    assert summary.state is ConnectionState.ABORTED
    assert supervisor.state is ConnectionState.ABORTED


def test_successful_subscribe_resets_backoff() -> None:
    first = FakeConnection([_kraken_ticker(), ConnectionResetError("peer reset")])
    last = FakeConnection([_kraken_ticker()])
    supervisor, _, _, wait = _make_supervisor(
        kraken.build_feed(),
        [first, OSError("refused"), last],
    )
    first.on_exhausted = None

    summary = supervisor.run()

    assert wait.delays == [1.0, 2.0]
    assert summary.sessions_opened == 2
    assert summary.quotes_accepted == 2
    assert summary.state is ConnectionState.STOPPED


def test_exchange_close_request_reconnects() -> None:
    first = FakeConnection(
        [
            json.dumps({"event": "subscribed", "chanId": 5}),
            json.dumps({"event": "info", "code": 20051, "msg": "Stopping. Please try to reconnect"}),
        ]
    )
    second = FakeConnection([json.dumps({"event": "subscribed", "chanId": 6}), json.dumps([6, [1.0, 2.0, 3.0, 4.0]])])
    supervisor, redis, connector, wait = _make_supervisor(bitfinex.build_feed(), [first, second])
    first.on_exhausted = None

    summary = supervisor.run()

    assert wait.delays == [1.0]
    assert len(connector.urls) == 2
    assert summary.sessions_opened == 2
    assert redis.series["BITFINEX:XBTUSD:QUOTE:SELL:PRICE"] == {RECEIVED_AT_MS: 3.0}


def test_configuration_error_aborts_without_retry() -> None:
    feed = ExchangeFeed(
        descriptor=SubscriptionDescriptor(exchange="KRAKEN", instrument="BTC/USD", heartbeat=HeartbeatPolicy()),
        codec=kraken.KrakenCodec(),
        normalizer=kraken.normalize_kraken,
    )
    supervisor, _, connector, wait = _make_supervisor(feed, [])

    with pytest.raises(ConfigurationError):
        supervisor.run()

    assert supervisor.state is ConnectionState.ABORTED
    assert connector.urls == []
    assert wait.delays == []


def test_sink_failure_does_not_stop_ingestion() -> None:
    redis = FakeRedis(fail_keys={"KRAKEN:XBTUSD:QUOTE:BUY:PRICE"})
    connection = FakeConnection([_kraken_ticker(bid=1.0), _kraken_ticker(bid=2.0)])
    supervisor, _, _, wait = _make_supervisor(kraken.build_feed(), [connection], redis=redis)

    summary = supervisor.run()

    assert summary.quotes_accepted == 2
    assert "KRAKEN:XBTUSD:QUOTE:BUY:PRICE" not in redis.series
    assert len(redis.series["KRAKEN:XBTUSD:QUOTE:SELL:PRICE"]) == 1
    assert wait.delays == []


def test_stop_during_backoff_ends_in_stopped_state() -> None:
    supervisor, _, _, _ = _make_supervisor(kraken.build_feed(), [OSError("refused")])

    def stop_while_waiting(_seconds: float) -> bool:
        supervisor.stop()
        return True

    supervisor._wait = stop_while_waiting

    summary = supervisor.run()

    assert summary.state is ConnectionState.STOPPED


def test_failure_classification() -> None:
    assert classify_failure(ConfigurationError("bad")) is FailureClass.FATAL
    assert classify_failure(OSError("refused")) is FailureClass.RECOVERABLE
    assert classify_failure(TimeoutError()) is FailureClass.RECOVERABLE
    assert classify_failure(ExchangeRequestedReconnect("20051")) is FailureClass.RECOVERABLE
    assert classify_failure(KeyError("bug")) is FailureClass.FATAL


def test_reconnect_policy_schedule() -> None:
    policy = ReconnectPolicy(max_attempts=5, base_seconds=1.0)

    delays = [policy.next_delay() for _ in range(6)]

    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, None]
    assert policy.schedule() == (1.0, 2.0, 4.0, 8.0, 16.0)
    policy.reset()
    assert policy.next_delay() == 1.0


def test_oversized_integer_price_is_discarded_without_ending_session() -> None:
    oversized = '{"channel":"ticker","data":[{"bid":1' + "0" * 400 + ',"bid_qty":1,"ask":2,"ask_qty":1}]}'
    script = [oversized, _kraken_ticker(bid=100.0, ask=101.0)]
    supervisor, redis, _, wait = _make_supervisor(kraken.build_feed(), [FakeConnection(script)])

    summary = supervisor.run()

    assert summary.state is ConnectionState.STOPPED
    assert summary.frames_discarded == 1
    assert summary.quotes_accepted == 1
    assert wait.delays == []
    assert redis.series["KRAKEN:XBTUSD:QUOTE:BUY:PRICE"] == {RECEIVED_AT_MS: 100.0}


def test_integer_past_parser_digit_limit_is_discarded() -> None:
    oversized = '{"channel":"ticker","data":[{"bid":' + "9" * 5000 + ',"bid_qty":1,"ask":2,"ask_qty":1}]}'
    script = [oversized, _kraken_ticker()]
    supervisor, _, _, wait = _make_supervisor(kraken.build_feed(), [FakeConnection(script)])

    summary = supervisor.run()

    assert summary.state is ConnectionState.STOPPED
    assert summary.frames_discarded == 1
    assert summary.quotes_accepted == 1
    assert wait.delays == []


class _FlakyKrakenCodec(kraken.KrakenCodec):
    def __init__(self) -> None:
        self.calls = 0

    def decode(self, frame: str | bytes) -> DecodedFrame:
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("codec bug")
        return super().decode(frame)


def test_codec_exception_counts_as_discarded_frame() -> None:
    feed = ExchangeFeed(
        descriptor=kraken.build_feed().descriptor,
        codec=_FlakyKrakenCodec(),
        normalizer=kraken.normalize_kraken,
    )
    supervisor, _, _, wait = _make_supervisor(feed, [FakeConnection([_kraken_ticker(), _kraken_ticker()])])

    summary = supervisor.run()

    assert summary.state is ConnectionState.STOPPED
    assert summary.frames_discarded == 1
    assert summary.quotes_accepted == 1
    assert summary.sessions_opened == 1
    assert wait.delays == []


def test_normalizer_exception_counts_as_discarded_frame() -> None:
    calls: list[int] = []

    def flaky_normalizer(payload, *, received_at_ms: int):
        calls.append(received_at_ms)
        if len(calls) == 1:
            raise ZeroDivisionError("normalizer bug")
        return kraken.normalize_kraken(payload, received_at_ms=received_at_ms)

    feed = ExchangeFeed(
        descriptor=kraken.build_feed().descriptor,
        codec=kraken.KrakenCodec(),
        normalizer=flaky_normalizer,
    )
    supervisor, _, _, wait = _make_supervisor(feed, [FakeConnection([_kraken_ticker(), _kraken_ticker()])])

    summary = supervisor.run()

    assert summary.frames_discarded == 1
    assert summary.quotes_accepted == 1
    assert wait.delays == []


def test_unusable_bootstrap_body_is_retried_with_backoff() -> None:
    responses = [
        lambda request: httpx.Response(status_code=200, request=request, text="<html>maintenance</html>"),
        lambda request: httpx.Response(
            status_code=200,
            request=request,
            json={
                "code": "200000",
                "data": {
                    "token": "abc",
                    "instanceServers": [{"endpoint": "wss://ws-api-spot.kucoin.com/", "pingInterval": 18000}],
                },
            },
        ),
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        return responses.pop(0)(request)

    client = ExchangeRESTClient(base_url="https://api.kucoin.com", transport=httpx.MockTransport(handler))
    supervisor, _, connector, wait = _make_supervisor(
        kucoin.build_feed(bootstrap=client.fetch_kucoin_public_endpoint),
        [FakeConnection()],
    )
    try:
        summary = supervisor.run()
    finally:
        client.close()

    assert wait.delays == [1.0]
    assert len(connector.urls) == 1
    assert connector.urls[0].startswith("wss://ws-api-spot.kucoin.com/?token=abc&connectId=")
    assert summary.state is ConnectionState.STOPPED
    assert summary.sessions_opened == 1


def test_bootstrap_response_error_is_recoverable() -> None:
    assert classify_failure(BootstrapResponseError("non-JSON body")) is FailureClass.RECOVERABLE
