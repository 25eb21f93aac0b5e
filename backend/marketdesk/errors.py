from __future__ import annotations

from enum import Enum


class ProviderErrorKind(str, Enum):
    RATE_LIMITED = "RATE_LIMITED"
    NOT_FOUND = "NOT_FOUND"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    INVALID_RESPONSE = "INVALID_RESPONSE"


class MarketDataError(Exception):
    pass


class RateLimitExhausted(MarketDataError):
    """Our own budget for a provider is used up for the current bucket."""

    def __init__(self, provider: str) -> None:
        super().__init__(f"rate limit budget exhausted for {provider}")
        self.provider = provider


class ProviderError(MarketDataError):
    kind: ProviderErrorKind = ProviderErrorKind.NETWORK_ERROR

    def __init__(self, provider: str, message: str = "") -> None:
        super().__init__(f"{provider}: {message or self.kind.value}")
        self.provider = provider
        self.message = message


class ProviderRateLimited(ProviderError):
    kind = ProviderErrorKind.RATE_LIMITED


class ProviderNotFound(ProviderError):
    kind = ProviderErrorKind.NOT_FOUND


class ProviderNetworkError(ProviderError):
    kind = ProviderErrorKind.NETWORK_ERROR


class ProviderTimeout(ProviderError):
    kind = ProviderErrorKind.TIMEOUT


class ProviderInvalidResponse(ProviderError):
    kind = ProviderErrorKind.INVALID_RESPONSE


class QuoteCacheError(MarketDataError):
    pass
