from __future__ import annotations

import datetime
import json
import re
import socket
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Protocol, TypeVar, runtime_checkable
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from pydantic import BaseModel, ValidationError

from marketdesk.errors import (
    ProviderInvalidResponse,
    ProviderNetworkError,
    ProviderNotFound,
    ProviderRateLimited,
    ProviderTimeout,
)
from marketdesk.schemas.market import PriceBar, Quote, SymbolSearchResult
from marketdesk.schemas.status import ProviderLimits
from marketdesk.utils import utc_now

_FRACTION = re.compile(r"\.\d{7,}")

_Model = TypeVar("_Model", bound=BaseModel)


class Capability(str, Enum):
    SEARCH = "search"
    QUOTE = "quote"
    HISTORY = "history"
    BATCH_QUOTE = "batch_quote"


@runtime_checkable
class SearchProvider(Protocol):
    name: str

    def search(self, query: str) -> list[SymbolSearchResult]: ...


@runtime_checkable
class QuoteProvider(Protocol):
    name: str

    def fetch_quote(self, symbol: str) -> Quote: ...


@runtime_checkable
class HistoryProvider(Protocol):
    name: str

    def fetch_history(self, symbol: str, start: datetime.date, end: datetime.date) -> list[PriceBar]: ...


@runtime_checkable
class BatchQuoteProvider(Protocol):
    name: str
    batch_size: int

    def fetch_batch_quotes(self, symbols: list[str]) -> list[Quote]: ...


_CAPABILITY_PROTOCOLS = {
    Capability.SEARCH: SearchProvider,
    Capability.QUOTE: QuoteProvider,
    Capability.HISTORY: HistoryProvider,
    Capability.BATCH_QUOTE: BatchQuoteProvider,
}


def capabilities_of(adapter: object) -> frozenset[Capability]:
    return frozenset(
        capability
        for capability, protocol in _CAPABILITY_PROTOCOLS.items()
        if isinstance(adapter, protocol)
    )


def supports(adapter: object, capability: Capability) -> bool:
    return isinstance(adapter, _CAPABILITY_PROTOCOLS[capability])


class ProviderAdapter:
    """Shared HTTP plumbing for vendor adapters.

    Subclasses opt into capabilities by defining ``search``, ``fetch_quote``,
    ``fetch_history`` or ``fetch_batch_quotes``; nothing is declared here so the
    protocol checks stay honest. Vendor fields go through ``_build`` so a payload
    of the wrong shape surfaces as ``ProviderInvalidResponse``.
    """

    name: str = ""

    def __init__(
        self,
        api_key: str,
        base_url: str,
        limits: ProviderLimits,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.limits = limits
        self.timeout_seconds = timeout_seconds

    def _get_text(self, path: str, params: dict[str, str], headers: dict[str, str] | None = None) -> str:
        url = f"{self.base_url}{path}?{urlencode(params)}"
        request = Request(url, headers={"Accept": "application/json", **(headers or {})})
        try:
            with urlopen(request, timeout=self.timeout_seconds) as response:
                body = response.read()
        except HTTPError as exc:
            if exc.code == 429:
                raise ProviderRateLimited(self.name, f"HTTP 429 from {path}") from exc
            if exc.code == 404:
                raise ProviderNotFound(self.name, f"HTTP 404 from {path}") from exc
            raise ProviderNetworkError(self.name, f"HTTP {exc.code} from {path}") from exc
        except (TimeoutError, socket.timeout) as exc:
            raise ProviderTimeout(self.name, f"no response from {path} within {self.timeout_seconds}s") from exc
        except URLError as exc:
            if isinstance(exc.reason, (TimeoutError, socket.timeout)):
                raise ProviderTimeout(
                    self.name, f"no response from {path} within {self.timeout_seconds}s"
                ) from exc
            raise ProviderNetworkError(self.name, f"{path}: {exc.reason}") from exc
        except OSError as exc:
            raise ProviderNetworkError(self.name, f"{path}: {exc}") from exc

        try:
            return body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProviderInvalidResponse(self.name, f"undecodable body from {path}") from exc

    def _get_json(self, path: str, params: dict[str, str], headers: dict[str, str] | None = None) -> Any:
        text = self._get_text(path, params, headers)
        return self._parse_json(text, path)

    def _parse_json(self, text: str, path: str) -> Any:
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise ProviderInvalidResponse(self.name, f"non-JSON body from {path}: {text[:200]!r}") from exc

    def _decimal(self, value: Any, field: str) -> Decimal:
        # str() first so JSON floats keep their printed digits
        if value is None or isinstance(value, bool):
            raise ProviderInvalidResponse(self.name, f"missing {field}")
        try:
            result = Decimal(str(value))
        except InvalidOperation as exc:
            raise ProviderInvalidResponse(self.name, f"bad {field}: {value!r}") from exc
        if not result.is_finite():
            raise ProviderInvalidResponse(self.name, f"bad {field}: {value!r}")
        return result

    def _now(self) -> datetime.datetime:
        return utc_now()

    def _timestamp(self, value: Any, field: str) -> datetime.datetime:
        """Parse an ISO-8601 string or a bare date; naive values are UTC."""
        if not isinstance(value, str) or not value:
            raise ProviderInvalidResponse(self.name, f"missing {field}")
        text = value.strip().replace("Z", "+00:00")
        # fromisoformat stops at microseconds, vendors sometimes send nanoseconds
        text = _FRACTION.sub(lambda match: match.group(0)[:7], text)
        try:
            parsed = datetime.datetime.fromisoformat(text)
        except ValueError as exc:
            raise ProviderInvalidResponse(self.name, f"bad {field}: {value!r}") from exc
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=datetime.UTC)
        return parsed.astimezone(datetime.UTC)

    def _epoch(self, value: Any, field: str) -> datetime.datetime:
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            raise ProviderInvalidResponse(self.name, f"bad {field}: {value!r}")
        try:
            return datetime.datetime.fromtimestamp(value, tz=datetime.UTC)
        except (OverflowError, OSError, ValueError) as exc:
            raise ProviderInvalidResponse(self.name, f"bad {field}: {value!r}") from exc

    def _int(self, value: Any, field: str) -> int | None:
        if value is None:
            return None
        # adjusted volumes can carry a fraction after splits
        return int(self._decimal(value, field).to_integral_value())

    def _build(self, model: type[_Model], **fields: Any) -> _Model:
        """Validate vendor fields into ``model``; a contract violation is an invalid response."""
        try:
            return model(**fields)
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
            )
            raise ProviderInvalidResponse(self.name, f"bad {model.__name__} ({problems})") from exc
