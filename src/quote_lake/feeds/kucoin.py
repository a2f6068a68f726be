from __future__ import annotations

from collections.abc import Callable
from typing import Any

from quote_lake.core.enums import FrameKind
from quote_lake.core.quote import Quote, require_float
from quote_lake.core.time_utils import now_ms
from quote_lake.sources.rest import BootstrapEndpoint

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

EXCHANGE = "KUCOIN"
# used until the bootstrap response supplies pingInterval
DEFAULT_PING_INTERVAL_SECONDS = 18.0


class KucoinCodec(WireCodec):
    def decode(self, frame: str | bytes) -> DecodedFrame:
        message, error = load_json(frame)
        if error is not None:
            return DecodedFrame.unrecognized(error, frame)
        if not isinstance(message, dict):
            return DecodedFrame.unrecognized("expected a JSON object", message)

        message_type = message.get("type")
        if message_type == "welcome":
            return DecodedFrame(kind=FrameKind.HEARTBEAT, payload=message, detail="welcome")
        if message_type == "ack":
            return DecodedFrame(kind=FrameKind.ACK, payload=message)
        if message_type == "pong":
            return DecodedFrame(kind=FrameKind.PONG, payload=message)
        if message_type == "ping":
            return DecodedFrame(kind=FrameKind.PING, payload=message.get("id"))
        if message_type == "error":
            return DecodedFrame(kind=FrameKind.ERROR, payload=message, detail=str(message.get("data")))
        if message_type == "message" and message.get("subject") == "trade.ticker":
            return DecodedFrame(kind=FrameKind.TICKER, payload=message)
        return DecodedFrame.unrecognized(f"unexpected message type {message_type!r}", message)

    def encode_subscribe(self, descriptor: SubscriptionDescriptor) -> list[str]:
        return [
            dump_json(
                {
                    "id": now_ms(),
                    "type": "subscribe",
                    "topic": f"/market/ticker:{descriptor.instrument}",
                    "response": True,
                }
            )
        ]

    def encode_pong(self, ping_payload: Any) -> str:
        return dump_json({"id": ping_payload, "type": "pong"})

    def encode_ping(self) -> str:
        return dump_json({"id": str(now_ms()), "type": "ping"})


def normalize_kucoin(payload: Any, *, received_at_ms: int) -> Quote:
    message = require_mapping(payload, "ticker message")
    data = require_mapping(message.get("data"), "ticker data", payload)

    return Quote(
        exchange=EXCHANGE,
        observed_at=event_time_ms(data.get("time"), fallback_ms=received_at_ms),
        bid_price=require_float(data, "bestBid"),
        bid_size=require_float(data, "bestBidSize"),
        ask_price=require_float(data, "bestAsk"),
        ask_size=require_float(data, "bestAskSize"),
    )


def build_feed(bootstrap: Callable[[], BootstrapEndpoint], instrument: str = "BTC-USDT") -> ExchangeFeed:
    return ExchangeFeed(
        descriptor=SubscriptionDescriptor(
            exchange=EXCHANGE,
            instrument=instrument,
            heartbeat=HeartbeatPolicy(interval_seconds=DEFAULT_PING_INTERVAL_SECONDS),
            bootstrap=bootstrap,
        ),
        codec=KucoinCodec(),
        normalizer=normalize_kucoin,
    )
