from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Final

from .enums import Metric, Side
from .errors import NormalizationError

DEFAULT_PAIR: Final[str] = "XBTUSD"
QUOTE_SUBSERIES: Final[str] = "QUOTE"


def coerce_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return float(value)
        except OverflowError:
            return None
    if isinstance(value, str):
        normalized = value.strip()
        if normalized == "":
            return None
        try:
            return float(normalized)
        except ValueError:
            return None
    return None


def coerce_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        normalized = value.strip()
        if normalized == "":
            return None
        try:
            return int(normalized)
        except ValueError:
            try:
                return int(float(normalized))
            except (ValueError, OverflowError):
                return None
    return None


def require_float(payload: Mapping[str, Any], field_name: str) -> float:
    if field_name not in payload:
        raise NormalizationError(f"missing field {field_name!r}", payload)
    value = coerce_float(payload[field_name])
    if value is None:
        raise NormalizationError(f"field {field_name!r} is not numeric: {payload[field_name]!r}", payload)
    if not math.isfinite(value) or value < 0:
        raise NormalizationError(f"field {field_name!r} is out of range: {value!r}", payload)
    return value


def split_volume(volume: float) -> tuple[float, float]:
    """Split an aggregate traded volume evenly across bid and ask.

    Feeds that only publish one volume figure get ``bid_size = ask_size = volume / 2``.
    This is an approximation with no accuracy guarantee; consumers reading the VOL
    series of such exchanges should treat it as half of the reported aggregate.
    """
    half = volume / 2.0
    return half, half


@dataclass(frozen=True, slots=True)
class Quote:
    exchange: str
    observed_at: int
    bid_price: float
    bid_size: float
    ask_price: float
    ask_size: float

    def __post_init__(self) -> None:
        for field_name in ("bid_price", "bid_size", "ask_price", "ask_size"):
            value = getattr(self, field_name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise NormalizationError(f"{field_name} must be a number, got {value!r}")
            if not math.isfinite(value) or value < 0:
                raise NormalizationError(f"{field_name} must be finite and non-negative, got {value!r}")
        if self.observed_at < 0:
            raise NormalizationError(f"observed_at must be non-negative, got {self.observed_at!r}")

    def value_for(self, side: Side, metric: Metric) -> float:
        if side is Side.BUY:
            return self.bid_price if metric is Metric.PRICE else self.bid_size
        return self.ask_price if metric is Metric.PRICE else self.ask_size


@dataclass(frozen=True, slots=True)
class SeriesKey:
    exchange: str
    side: Side
    metric: Metric
    pair: str = DEFAULT_PAIR

    @property
    def name(self) -> str:
        return f"{self.exchange.upper()}:{self.pair}:{QUOTE_SUBSERIES}:{self.side}:{self.metric}"

    @property
    def labels(self) -> dict[str, str]:
        return {
            "EXCHANGE": self.exchange.upper(),
            "SIDE": str(self.side),
            "SUB": QUOTE_SUBSERIES,
            "GROUP": str(self.metric),
        }


def series_keys(exchange: str, pair: str = DEFAULT_PAIR) -> tuple[SeriesKey, ...]:
    return tuple(
        SeriesKey(exchange=exchange.upper(), side=side, metric=metric, pair=pair)
        for side in (Side.BUY, Side.SELL)
        for metric in (Metric.PRICE, Metric.VOL)
    )
