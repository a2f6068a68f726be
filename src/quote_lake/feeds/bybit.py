from __future__ import annotations

from typing import Any

from quote_lake.core.enums import FrameKind
from quote_lake.core.quote import Quote, require_float, split_volume

from .base import (
    DecodedFrame,
    ExchangeFeed,
    HeartbeatPolicy,
    SubscriptionDescriptor,
    WireCodec,
    dump_json,
    event_time_ms,
    load_json,
    require_mapping,
)

EXCHANGE = "BYBIT"
BYBIT_WS_API = "wss://stream.bybit.com/v5/public/spot"


class BybitCodec(WireCodec):
    def decode(self, frame: str | bytes) -> DecodedFrame:
        message, error = load_json(frame)
        if error is not None:
            return DecodedFrame.unrecognized(error, frame)
        if not isinstance(message, dict):
            return DecodedFrame.unrecognized("expected a JSON object", message)

        op = message.get("op")
        if op in {"pong", "ping"} or message.get("ret_msg") == "pong":
            return DecodedFrame(kind=FrameKind.PONG, payload=message)
        if op == "subscribe":
            if message.get("success") is False:
                return DecodedFrame(kind=FrameKind.ERROR, payload=message, detail=str(message.get("ret_msg")))
            return DecodedFrame(kind=FrameKind.ACK, payload=message)

        topic = message.get("topic")
        if isinstance(topic, str) and topic.startswith("tickers."):
            return DecodedFrame(kind=FrameKind.TICKER, payload=message)
        return DecodedFrame.unrecognized(f"unexpected topic {topic!r}", message)

    def encode_subscribe(self, descriptor: SubscriptionDescriptor) -> list[str]:
        return [dump_json({"op": "subscribe", "args": [f"tickers.{descriptor.instrument}"]})]


def normalize_bybit(payload: Any, *, received_at_ms: int) -> Quote:
    """Spot tickers carry no top-of-book, so both sides use the last traded price
    and the 24h volume is split evenly across them."""
    message = require_mapping(payload, "ticker message")
    data = require_mapping(message.get("data"), "ticker data", payload)

    last_price = require_float(data, "lastPrice")
    bid_size, ask_size = split_volume(require_float(data, "volume24h"))
    return Quote(
        exchange=EXCHANGE,
        observed_at=event_time_ms(message.get("ts"), fallback_ms=received_at_ms),
        bid_price=last_price,
        bid_size=bid_size,
        ask_price=last_price,
        ask_size=ask_size,
    )


def build_feed(instrument: str = "BTCUSDT") -> ExchangeFeed:
    return ExchangeFeed(
        descriptor=SubscriptionDescriptor(
            exchange=EXCHANGE,
            instrument=instrument,
            endpoint=BYBIT_WS_API,
            heartbeat=HeartbeatPolicy(interval_seconds=5.0),
        ),
        codec=BybitCodec(),
        normalizer=normalize_bybit,
    )
