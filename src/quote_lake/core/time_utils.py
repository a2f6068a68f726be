from __future__ import annotations

from datetime import UTC, datetime


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def now_ms() -> int:
    return int(utc_now().timestamp() * 1000)
