from __future__ import annotations

from typing import Any

from quote_lake.core.enums import FrameKind
from quote_lake.core.quote import Quote, coerce_int, require_float

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

EXCHANGE = "MEXC"
MEXC_WS_API = "wss://wbs.mexc.com/ws"
SUBSCRIPTION_ID = 1

PING_FRAME = dump_json({"method": "PING"})
PONG_FRAME = dump_json({"method": "PONG"})


class MexcCodec(WireCodec):
    def decode(self, frame: str | bytes) -> DecodedFrame:
        message, error = load_json(frame)
        if error is not None:
            return DecodedFrame.unrecognized(error, frame)
        if not isinstance(message, dict):
            return DecodedFrame.unrecognized("expected a JSON object", message)

        method = message.get("method")
        if method == "PING":
            return DecodedFrame(kind=FrameKind.PING, payload=message)
        if method == "PONG" or message.get("msg") == "PONG":
            return DecodedFrame(kind=FrameKind.PONG, payload=message)

        if "publicbookticker" in message:
            return DecodedFrame(kind=FrameKind.TICKER, payload=message)

        if "id" in message and "code" in message:
            code = coerce_int(message.get("code"))
            if code == 0:
                return DecodedFrame(kind=FrameKind.ACK, payload=message)
            return DecodedFrame(kind=FrameKind.ERROR, payload=message, detail=str(message.get("msg")))
        return DecodedFrame.unrecognized("neither a book ticker nor a control message", message)

    def encode_subscribe(self, descriptor: SubscriptionDescriptor) -> list[str]:
        return [
            dump_json(
                {
                    "method": "SUBSCRIPTION",
                    "params": [f"spot@public.bookTicker.v3.api@{descriptor.instrument}"],
                    "id": SUBSCRIPTION_ID,
                }
            )
        ]

    def encode_pong(self, ping_payload: Any) -> str:
        return PONG_FRAME

    def encode_ping(self) -> str:
        return PING_FRAME


def normalize_mexc(payload: Any, *, received_at_ms: int) -> Quote:
    message = require_mapping(payload, "book ticker message")
    ticker = require_mapping(message.get("publicbookticker"), "publicbookticker", payload)

    return Quote(
        exchange=EXCHANGE,
        observed_at=event_time_ms(message.get("sendtime"), fallback_ms=received_at_ms),
        bid_price=require_float(ticker, "bidprice"),
        bid_size=require_float(ticker, "bidquantity"),
        ask_price=require_float(ticker, "askprice"),
        ask_size=require_float(ticker, "askquantity"),
    )


def build_feed(instrument: str = "BTCUSDT") -> ExchangeFeed:
    return ExchangeFeed(
        descriptor=SubscriptionDescriptor(
            exchange=EXCHANGE,
            instrument=instrument,
            endpoint=MEXC_WS_API,
            heartbeat=HeartbeatPolicy(interval_seconds=5.0),
        ),
        codec=MexcCodec(),
        normalizer=normalize_mexc,
    )
