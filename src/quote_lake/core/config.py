from __future__ import annotations

import json
from typing import Annotated, Any
from urllib.parse import quote

from pydantic import AliasChoices, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .errors import ConfigurationError

SUPPORTED_EXCHANGES: tuple[str, ...] = (
    "BITFINEX",
    "BITGET",
    "BYBIT",
    "GATEIO",
    "HTX",
    "KRAKEN",
    "KUCOIN",
    "MEXC",
)


class Settings(BaseSettings):
    redis_host: str = Field(default="cache", validation_alias=AliasChoices("QL_REDIS_HOST", "REDIS_HOST"))
    redis_port: int = Field(default=6379, ge=1, le=65535)
    redis_username: str = Field(default="default")
    redis_password: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("QL_REDIS_PASSWORD", "REDIS_PASSWORD"),
    )
    redis_socket_timeout_seconds: float = Field(default=5.0, gt=0)

    series_pair: str = Field(default="XBTUSD")
    retention_ms: int = Field(default=3_600_000, ge=0)
    exchanges: Annotated[list[str], NoDecode] = Field(default_factory=lambda: list(SUPPORTED_EXCHANGES))

    max_reconnect_attempts: int = Field(default=5, ge=0)
    reconnect_base_seconds: float = Field(default=1.0, gt=0)
    read_timeout_seconds: float = Field(default=1.0, gt=0)
    open_timeout_seconds: float = Field(default=10.0, gt=0)

    kucoin_rest_base_url: str = Field(default="https://api.kucoin.com")
    rest_timeout_seconds: int = Field(default=10, ge=1)
    rest_max_retries: int = Field(default=3, ge=1)

    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="QL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("exchanges", mode="before")
    @classmethod
    def _split_exchanges(cls, value: Any) -> Any:
        # QL_EXCHANGES accepts "KRAKEN,HTX" as well as a JSON list
        if isinstance(value, str):
            text = value.strip()
            if text.startswith("["):
                return json.loads(text)
            return text.split(",")
        return value

    @field_validator("exchanges")
    @classmethod
    def _normalize_exchanges(cls, value: list[str]) -> list[str]:
        normalized = [item.strip().upper() for item in value if item.strip()]
        unknown = sorted(set(normalized) - set(SUPPORTED_EXCHANGES))
        if unknown:
            raise ValueError(f"unsupported exchanges: {', '.join(unknown)}")
        return list(dict.fromkeys(normalized))

    def redis_url(self) -> str:
        if self.redis_password is None or not self.redis_password.get_secret_value():
            raise ConfigurationError("Redis password is not set; export QL_REDIS_PASSWORD or REDIS_PASSWORD")
        password = quote(self.redis_password.get_secret_value(), safe="")
        return f"redis://{self.redis_username}:{password}@{self.redis_host}:{self.redis_port}"
