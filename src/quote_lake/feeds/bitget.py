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
    event_time_ms,
    load_json,
    require_mapping,
)

EXCHANGE = "BITGET"
BITGET_WS_API = "wss://ws.bitget.com/v2/ws/public"


class BitgetCodec(WireCodec):
    def decode(self, frame: str | bytes) -> DecodedFrame:
        if isinstance(frame, str) and frame.strip() == "pong":
            return DecodedFrame(kind=FrameKind.PONG, payload=frame)

        message, error = load_json(frame)
        if error is not None:
            return DecodedFrame.unrecognized(error, frame)
        if not isinstance(message, dict):
            return DecodedFrame.unrecognized("expected a JSON object", message)

        event = message.get("event")
        if event == "subscribe":
            return DecodedFrame(kind=FrameKind.ACK, payload=message)
        if event == "error":
            return DecodedFrame(kind=FrameKind.ERROR, payload=message, detail=str(message.get("msg")))

        arg = message.get("arg")
        if isinstance(arg, dict) and arg.get("channel") == "ticker" and "data" in message:
            return DecodedFrame(kind=FrameKind.TICKER, payload=message)
        return DecodedFrame.unrecognized("neither a ticker nor a subscription event", message)

    def encode_subscribe(self, descriptor: SubscriptionDescriptor) -> list[str]:
        return [
            dump_json(
                {
                    "op": "subscribe",
                    "args": [{"instType": "SPOT", "channel": "ticker", "instId": descriptor.instrument}],
                }
            )
        ]


def normalize_bitget(payload: Any, *, received_at_ms: int) -> Quote:
    message = require_mapping(payload, "ticker message")
    data = message.get("data")
    if not isinstance(data, list) or not data:
        raise NormalizationError("ticker message carries no data rows", payload)
    ticker = require_mapping(data[0], "ticker row", payload)

    return Quote(
        exchange=EXCHANGE,
        observed_at=event_time_ms(ticker.get("ts"), fallback_ms=received_at_ms),
        bid_price=require_float(ticker, "bidPr"),
        bid_size=require_float(ticker, "bidSz"),
        ask_price=require_float(ticker, "askPr"),
        ask_size=require_float(ticker, "askSz"),
    )


def build_feed(instrument: str = "BTCUSDT") -> ExchangeFeed:
    return ExchangeFeed(
        descriptor=SubscriptionDescriptor(
            exchange=EXCHANGE,
            instrument=instrument,
            endpoint=BITGET_WS_API,
            heartbeat=HeartbeatPolicy(interval_seconds=5.0),
        ),
        codec=BitgetCodec(),
        normalizer=normalize_bitget,
    )
