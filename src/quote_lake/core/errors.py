from __future__ import annotations

from typing import Any


class QuoteLakeError(Exception):
    """Base class for quote lake failures."""


class ConfigurationError(QuoteLakeError):
    """Raised when the process cannot run with the supplied configuration."""


class NormalizationError(QuoteLakeError, ValueError):
    def __init__(self, message: str, payload: Any = None) -> None:
        super().__init__(message)
        self.payload = payload


class ExchangeRequestedReconnect(QuoteLakeError):
    """Raised when an exchange tells the client to drop the session and reconnect."""
