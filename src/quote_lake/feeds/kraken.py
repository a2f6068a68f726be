from __future__ import annotations

from typing import Any

from quote_lake.core.enums import FrameKind
from quote_lake.core.errors import NormalizationError
from quote_lake.core.quote import Quote, require_float

from .base import (
    DecodedFrame,
    ExchangeFeed,
    HeartbeatPolicy,
    SubscriptionDescriptor,
    WireCodec,
    dump_json,
    load_json,
    require_mapping,
)

EXCHANGE = "KRAKEN"
KRAKEN_WS_API = "wss://ws.kraken.com/v2"


class KrakenCodec(WireCodec):
    def decode(self, frame: str | bytes) -> DecodedFrame:
        message, error = load_json(frame)
        if error is not None:
            return DecodedFrame.unrecognized(error, frame)
        if not isinstance(message, dict):
            return DecodedFrame.unrecognized("expected a JSON object", message)

        if message.get("method") == "subscribe":
            if message.get("success") is False:
                return DecodedFrame(kind=FrameKind.ERROR, payload=message, detail=str(message.get("error")))
            return DecodedFrame(kind=FrameKind.ACK, payload=message)
        if message.get("method") == "pong":
            return DecodedFrame(kind=FrameKind.PONG, payload=message)

        channel = message.get("channel")
        if channel == "heartbeat":
            return DecodedFrame(kind=FrameKind.HEARTBEAT, payload=message)
        if channel == "status":
            return DecodedFrame(kind=FrameKind.HEARTBEAT, payload=message, detail="status")
        if channel == "ticker":
            return DecodedFrame(kind=FrameKind.TICKER, payload=message)
        return DecodedFrame.unrecognized(f"unexpected channel {channel!r}", message)

    def encode_subscribe(self, descriptor: SubscriptionDescriptor) -> list[str]:
        return [
            dump_json(
                {
                    "method": "subscribe",
                    "params": {
                        "channel": "ticker",
                        "symbol": [descriptor.instrument],
                        "event_trigger": "bbo",
                        "snapshot": True,
                    },
                }
            )
        ]


def normalize_kraken(payload: Any, *, received_at_ms: int) -> Quote:
    message = require_mapping(payload, "ticker message")
    data = message.get("data")
    if not isinstance(data, list) or not data:
        raise NormalizationError("ticker message carries no data rows", payload)
    ticker = require_mapping(data[0], "ticker row", payload)

    return Quote(
        exchange=EXCHANGE,
        observed_at=received_at_ms,
        bid_price=require_float(ticker, "bid"),
        bid_size=require_float(ticker, "bid_qty"),
        ask_price=require_float(ticker, "ask"),
        ask_size=require_float(ticker, "ask_qty"),
    )


def build_feed(instrument: str = "BTC/USD") -> ExchangeFeed:
    return ExchangeFeed(
        descriptor=SubscriptionDescriptor(
            exchange=EXCHANGE,
            instrument=instrument,
            endpoint=KRAKEN_WS_API,
            heartbeat=HeartbeatPolicy(interval_seconds=30.0),
        ),
        codec=KrakenCodec(),
        normalizer=normalize_kraken,
    )
