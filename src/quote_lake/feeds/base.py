from __future__ import annotations

import gzip
import json
import logging
import zlib
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from quote_lake.core.enums import FrameKind
from quote_lake.core.errors import ConfigurationError, NormalizationError
from quote_lake.core.quote import Quote, coerce_int
from quote_lake.sources.rest import BootstrapEndpoint

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"


@dataclass(frozen=True, slots=True)
class DecodedFrame:
    kind: FrameKind
    payload: Any = None
    channel_id: int | None = None
    detail: str | None = None

    @classmethod
    def unrecognized(cls, detail: str, payload: Any = None) -> DecodedFrame:
        return cls(kind=FrameKind.UNRECOGNIZED, payload=payload, detail=detail)


@dataclass(frozen=True, slots=True)
class HeartbeatPolicy:
    """Supervisor-driven liveness.

    ``interval_seconds=None`` leaves liveness to the exchange's own ping events,
    which the codec answers as they arrive.
    """

    interval_seconds: float | None = None

    @property
    def supervisor_driven(self) -> bool:
        return self.interval_seconds is not None


@dataclass(frozen=True, slots=True)
class SubscriptionDescriptor:
    exchange: str
    instrument: str
    endpoint: str | None = None
    heartbeat: HeartbeatPolicy = field(default_factory=HeartbeatPolicy)
    bootstrap: Callable[[], BootstrapEndpoint] | None = None

    @property
    def requires_bootstrap(self) -> bool:
        return self.bootstrap is not None

    def resolve_endpoint(self) -> BootstrapEndpoint:
        if self.bootstrap is not None:
            return self.bootstrap()
        if not self.endpoint:
            raise ConfigurationError(f"{self.exchange} descriptor has neither an endpoint nor a bootstrap procedure")
        return BootstrapEndpoint(url=self.endpoint)


class QuoteNormalizer(Protocol):
    def __call__(self, payload: Any, *, received_at_ms: int) -> Quote: ...


class WireCodec(ABC):
    @abstractmethod
    def decode(self, frame: str | bytes) -> DecodedFrame: ...

    @abstractmethod
    def encode_subscribe(self, descriptor: SubscriptionDescriptor) -> list[str]: ...

    def encode_pong(self, ping_payload: Any) -> str | None:
        return None

    def encode_ping(self) -> str | None:
        """Application-level heartbeat frame; ``None`` means a transport ping frame."""
        return None


@dataclass(frozen=True, slots=True)
class ExchangeFeed:
    descriptor: SubscriptionDescriptor
    codec: WireCodec
    normalizer: QuoteNormalizer

    @property
    def exchange(self) -> str:
        return self.descriptor.exchange


def frame_text(frame: str | bytes) -> str | None:
    if isinstance(frame, str):
        return frame

    raw = bytes(frame)
    if raw.startswith(GZIP_MAGIC):
        try:
            raw = gzip.decompress(raw)
        except (OSError, EOFError, zlib.error):
            logger.warning("Failed to decompress binary frame", extra={"frame_bytes": len(frame)})
            return None
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        logger.warning("Dropping binary frame that is not UTF-8", extra={"frame_bytes": len(frame)})
        return None


def load_json(frame: str | bytes) -> tuple[Any, str | None]:
    """Return ``(message, None)`` or ``(None, reason)`` for a raw websocket frame."""
    text = frame_text(frame)
    if text is None:
        return None, "undecodable binary frame"
    try:
        return json.loads(text), None
    except json.JSONDecodeError as exc:
        return None, f"invalid JSON: {exc.msg}"
    except (ValueError, RecursionError) as exc:
        # oversized integer literals and pathological nesting
        return None, f"unparseable JSON: {exc.__class__.__name__}"


def dump_json(message: Mapping[str, Any]) -> str:
    return json.dumps(message, separators=(",", ":"))


def event_time_ms(value: Any, *, fallback_ms: int) -> int:
    parsed = coerce_int(value)
    if parsed is None or parsed <= 0:
        return fallback_ms
    return parsed


def require_mapping(value: Any, what: str, payload: Any = None) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise NormalizationError(f"{what} is not an object", payload if payload is not None else value)
    return value
