from __future__ import annotations

from typing import Any

from quote_lake.core.enums import FrameKind
from quote_lake.core.quote import Quote, require_float, split_volume
from quote_lake.core.time_utils import now_ms

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

EXCHANGE = "GATEIO"
GATEIO_WS_API = "wss://api.gateio.ws/ws/v4/"
TICKERS_CHANNEL = "spot.tickers"


class GateioCodec(WireCodec):
    def decode(self, frame: str | bytes) -> DecodedFrame:
        message, error = load_json(frame)
        if error is not None:
            return DecodedFrame.unrecognized(error, frame)
        if not isinstance(message, dict):
            return DecodedFrame.unrecognized("expected a JSON object", message)

        channel = message.get("channel")
        event = message.get("event")
        if channel == "spot.pong":
            return DecodedFrame(kind=FrameKind.PONG, payload=message)
        if message.get("error"):
            return DecodedFrame(kind=FrameKind.ERROR, payload=message, detail=str(message["error"]))
        if channel != TICKERS_CHANNEL:
            return DecodedFrame.unrecognized(f"unexpected channel {channel!r}", message)
        if event == "subscribe":
            return DecodedFrame(kind=FrameKind.ACK, payload=message)
        if event == "update":
            return DecodedFrame(kind=FrameKind.TICKER, payload=message)
        return DecodedFrame.unrecognized(f"unexpected event {event!r}", message)

    def encode_subscribe(self, descriptor: SubscriptionDescriptor) -> list[str]:
        return [
            dump_json(
                {
                    "time": now_ms() // 1000,
                    "channel": TICKERS_CHANNEL,
                    "event": "subscribe",
                    "payload": [descriptor.instrument],
                }
            )
        ]


def normalize_gateio(payload: Any, *, received_at_ms: int) -> Quote:
    message = require_mapping(payload, "ticker message")
    result = require_mapping(message.get("result"), "ticker result", payload)

    bid_size, ask_size = split_volume(require_float(result, "base_volume"))
    return Quote(
        exchange=EXCHANGE,
        observed_at=event_time_ms(message.get("time_ms"), fallback_ms=received_at_ms),
        bid_price=require_float(result, "highest_bid"),
        bid_size=bid_size,
        ask_price=require_float(result, "lowest_ask"),
        ask_size=ask_size,
    )


def build_feed(instrument: str = "BTC_USDT") -> ExchangeFeed:
    return ExchangeFeed(
        descriptor=SubscriptionDescriptor(
            exchange=EXCHANGE,
            instrument=instrument,
            endpoint=GATEIO_WS_API,
            heartbeat=HeartbeatPolicy(interval_seconds=5.0),
        ),
        codec=GateioCodec(),
        normalizer=normalize_gateio,
    )
