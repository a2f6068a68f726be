from __future__ import annotations

from enum import StrEnum


class Side(StrEnum):
    BUY = "BUY"
    SELL = "SELL"


class Metric(StrEnum):
    PRICE = "PRICE"
    VOL = "VOL"


class FrameKind(StrEnum):
    TICKER = "ticker"
    PING = "ping"
    PONG = "pong"
    ACK = "ack"
    HEARTBEAT = "heartbeat"
    ERROR = "error"
    CLOSE = "close"
    UNRECOGNIZED = "unrecognized"


class ConnectionState(StrEnum):
    CONNECTING = "connecting"
    SUBSCRIBING = "subscribing"
    STREAMING = "streaming"
    CLOSING = "closing"
    ABORTED = "aborted"
    STOPPED = "stopped"


class FailureClass(StrEnum):
    RECOVERABLE = "recoverable"
    FATAL = "fatal"
