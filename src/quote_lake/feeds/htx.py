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

EXCHANGE = "HTX"
HTX_WS_API = "wss://api.huobi.pro/ws"
SUBSCRIPTION_ID = "id1"


class HtxCodec(WireCodec):
    """HTX market data arrives gzip-compressed in binary frames and the server
    keeps the session alive with in-band ``{"ping": <ts>}`` messages."""

    def decode(self, frame: str | bytes) -> DecodedFrame:
        message, error = load_json(frame)
        if error is not None:
            return DecodedFrame.unrecognized(error, frame)
        if not isinstance(message, dict):
            return DecodedFrame.unrecognized("expected a JSON object", message)

        if "ping" in message:
            return DecodedFrame(kind=FrameKind.PING, payload=message["ping"])
        if "pong" in message:
            return DecodedFrame(kind=FrameKind.PONG, payload=message["pong"])

        status = message.get("status")
        if status == "ok" and "subbed" in message:
            return DecodedFrame(kind=FrameKind.ACK, payload=message)
        if status == "error":
            return DecodedFrame(kind=FrameKind.ERROR, payload=message, detail=str(message.get("err-msg")))

        if isinstance(message.get("ch"), str) and "tick" in message:
            return DecodedFrame(kind=FrameKind.TICKER, payload=message)
        return DecodedFrame.unrecognized("neither a ticker nor a control message", message)

    def encode_subscribe(self, descriptor: SubscriptionDescriptor) -> list[str]:
        return [dump_json({"sub": f"market.{descriptor.instrument}.ticker", "id": SUBSCRIPTION_ID})]

    def encode_pong(self, ping_payload: Any) -> str:
        return dump_json({"pong": ping_payload})


def normalize_htx(payload: Any, *, received_at_ms: int) -> Quote:
    message = require_mapping(payload, "ticker message")
    tick = require_mapping(message.get("tick"), "tick", payload)

    bid_size, ask_size = split_volume(require_float(tick, "vol"))
    return Quote(
        exchange=EXCHANGE,
        observed_at=event_time_ms(message.get("ts"), fallback_ms=received_at_ms),
        bid_price=require_float(tick, "bid"),
        bid_size=bid_size,
        ask_price=require_float(tick, "ask"),
        ask_size=ask_size,
    )


def build_feed(instrument: str = "btcusdt") -> ExchangeFeed:
    return ExchangeFeed(
        descriptor=SubscriptionDescriptor(
            exchange=EXCHANGE,
            instrument=instrument,
            endpoint=HTX_WS_API,
            heartbeat=HeartbeatPolicy(interval_seconds=None),
        ),
        codec=HtxCodec(),
        normalizer=normalize_htx,
    )
