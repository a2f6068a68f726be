from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass

import httpx

from quote_lake.core.quote import coerce_float
from quote_lake.core.time_utils import now_ms

logger = logging.getLogger(__name__)

KUCOIN_BULLET_PUBLIC_PATH = "/api/v1/bullet-public"
KUCOIN_OK_CODE = "200000"


@dataclass(frozen=True, slots=True)
class BootstrapEndpoint:
    url: str
    ping_interval_seconds: float | None = None
    ping_timeout_seconds: float | None = None


class BootstrapResponseError(httpx.HTTPError):
    """Raised when a bootstrap endpoint answers 2xx with an unusable body."""


def _is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or 500 <= status_code < 600


def _retry_after_seconds(response: httpx.Response) -> float | None:
    raw_value = response.headers.get("Retry-After")
    if raw_value is None:
        return None
    try:
        return max(0.0, float(raw_value.strip()))
    except ValueError:
        return None


def _millis_to_seconds(value: object) -> float | None:
    millis = coerce_float(value)
    if millis is None or millis <= 0:
        return None
    return millis / 1000.0


class ExchangeRESTClient:
    def __init__(
        self,
        base_url: str,
        timeout_seconds: int = 10,
        retries: int = 3,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout_seconds,
            transport=transport,
        )
        self._retries = max(1, retries)
        self._base_delay_seconds = 1.0
        self._max_delay_seconds = 30.0

    def close(self) -> None:
        self._client.close()

    def _post(self, path: str) -> httpx.Response:
        attempt = 1
        while True:
            try:
                response = self._client.post(path)
            except httpx.TransportError as exc:
                if attempt >= self._retries:
                    raise
                self._wait_before_retry(attempt, path=path, reason=exc.__class__.__name__)
            else:
                if attempt >= self._retries or not _is_retryable_status(response.status_code):
                    response.raise_for_status()
                    return response
                self._wait_before_retry(
                    attempt,
                    path=path,
                    reason=f"HTTP {response.status_code}",
                    retry_after_seconds=_retry_after_seconds(response),
                )
            attempt += 1

    def _wait_before_retry(
        self,
        attempt: int,
        *,
        path: str,
        reason: str,
        retry_after_seconds: float | None = None,
    ) -> None:
        if retry_after_seconds is None:
            delay = min(self._max_delay_seconds, self._base_delay_seconds * (2 ** (attempt - 1)))
            delay += random.uniform(0.0, 0.3)  # noqa: S311
        else:
            delay = retry_after_seconds
        logger.warning(
            "Retrying bootstrap request",
            extra={
                "path": path,
                "attempt": attempt,
                "max_attempts": self._retries,
                "reason": reason,
                "sleep_seconds": round(delay, 3),
            },
        )
        time.sleep(delay)

    def fetch_kucoin_public_endpoint(self) -> BootstrapEndpoint:
        response = self._post(KUCOIN_BULLET_PUBLIC_PATH)
        try:
            payload = response.json()
        except ValueError as exc:
            content_type = response.headers.get("content-type")
            raise BootstrapResponseError(f"KuCoin bullet-public returned a non-JSON body ({content_type})") from exc

        if not isinstance(payload, dict) or str(payload.get("code")) != KUCOIN_OK_CODE:
            raise BootstrapResponseError(f"KuCoin bullet-public rejected the request: {payload!r}")

        data = payload.get("data")
        token = data.get("token") if isinstance(data, dict) else None
        servers = data.get("instanceServers") if isinstance(data, dict) else None
        server = servers[0] if isinstance(servers, list) and servers else None
        if not isinstance(token, str) or not token or not isinstance(server, dict) or not server.get("endpoint"):
            raise BootstrapResponseError(f"KuCoin bullet-public returned no usable server: {payload!r}")

        return BootstrapEndpoint(
            url=f"{server['endpoint']}?token={token}&connectId={now_ms()}",
            ping_interval_seconds=_millis_to_seconds(server.get("pingInterval")),
            ping_timeout_seconds=_millis_to_seconds(server.get("pingTimeout")),
        )
