from __future__ import annotations

from typing import Any

from quote_lake.core.enums import FrameKind
from quote_lake.core.errors import NormalizationError
from quote_lake.core.quote import Quote, coerce_int, require_float

from .base import (
    DecodedFrame,
    ExchangeFeed,
    HeartbeatPolicy,
    SubscriptionDescriptor,
    WireCodec,
    dump_json,
    load_json,
)

EXCHANGE = "BITFINEX"
BITFINEX_WS_API = "wss://api-pub.bitfinex.com/ws/2"

# info codes asking clients to reconnect / resubscribe
RECONNECT_INFO_CODES = frozenset({20051, 20061})

_TICKER_FIELDS = ("bid", "bid_size", "ask", "ask_size")


class BitfinexCodec(WireCodec):
    def decode(self, frame: str | bytes) -> DecodedFrame:
        message, error = load_json(frame)
        if error is not None:
            return DecodedFrame.unrecognized(error, frame)
        if isinstance(message, dict):
            return self._decode_event(message)
        if isinstance(message, list):
            return self._decode_channel_message(message)
        return DecodedFrame.unrecognized("expected an event object or channel array", message)

    @staticmethod
    def _decode_event(message: dict[str, Any]) -> DecodedFrame:
        event = message.get("event")
        if event == "subscribed":
            return DecodedFrame(kind=FrameKind.ACK, payload=message, channel_id=coerce_int(message.get("chanId")))
        if event == "info":
            code = coerce_int(message.get("code"))
            if code in RECONNECT_INFO_CODES:
                return DecodedFrame(kind=FrameKind.CLOSE, payload=message, detail=str(message.get("msg") or code))
            return DecodedFrame(kind=FrameKind.HEARTBEAT, payload=message, detail="info")
        if event == "pong":
            return DecodedFrame(kind=FrameKind.PONG, payload=message)
        if event == "error":
            return DecodedFrame(kind=FrameKind.ERROR, payload=message, detail=str(message.get("msg")))
        return DecodedFrame.unrecognized(f"unexpected event {event!r}", message)

    @staticmethod
    def _decode_channel_message(message: list[Any]) -> DecodedFrame:
        if len(message) < 2:
            return DecodedFrame.unrecognized("channel array too short", message)
        channel_id = coerce_int(message[0])
        if channel_id is None:
            return DecodedFrame.unrecognized("channel array without a channel id", message)
        body = message[1]
        if body == "hb":
            return DecodedFrame(kind=FrameKind.HEARTBEAT, payload=message, channel_id=channel_id)
        if isinstance(body, list):
            return DecodedFrame(kind=FrameKind.TICKER, payload=body, channel_id=channel_id)
        return DecodedFrame.unrecognized("unexpected channel body", message)

    def encode_subscribe(self, descriptor: SubscriptionDescriptor) -> list[str]:
        return [dump_json({"event": "subscribe", "channel": "ticker", "symbol": descriptor.instrument})]


def normalize_bitfinex(payload: Any, *, received_at_ms: int) -> Quote:
    # [BID, BID_SIZE, ASK, ASK_SIZE, DAILY_CHANGE, ...]
    if not isinstance(payload, list) or len(payload) < len(_TICKER_FIELDS):
        raise NormalizationError("ticker array is shorter than four fields", payload)
    row = dict(zip(_TICKER_FIELDS, payload, strict=False))
    try:
        return Quote(
            exchange=EXCHANGE,
            observed_at=received_at_ms,
            bid_price=require_float(row, "bid"),
            bid_size=require_float(row, "bid_size"),
            ask_price=require_float(row, "ask"),
            ask_size=require_float(row, "ask_size"),
        )
    except NormalizationError as exc:
        raise NormalizationError(str(exc), payload) from exc


def build_feed(instrument: str = "tBTCUSD") -> ExchangeFeed:
    return ExchangeFeed(
        descriptor=SubscriptionDescriptor(
            exchange=EXCHANGE,
            instrument=instrument,
            endpoint=BITFINEX_WS_API,
            heartbeat=HeartbeatPolicy(interval_seconds=30.0),
        ),
        codec=BitfinexCodec(),
        normalizer=normalize_bitfinex,
    )
