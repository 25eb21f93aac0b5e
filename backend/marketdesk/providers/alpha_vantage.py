from __future__ import annotations

from typing import Any

from marketdesk.errors import ProviderInvalidResponse, ProviderNotFound, ProviderRateLimited
from marketdesk.providers.base import ProviderAdapter
from marketdesk.schemas.market import Quote, SymbolSearchResult

_QUERY_PATH = "/query"
_SOFT_LIMIT_MARKER = "Thank you for using Alpha Vantage"


class AlphaVantageAdapter(ProviderAdapter):
    """Alpha Vantage. Throttling arrives as HTTP 200 with a notice in the body."""

    name = "alpha-vantage"

    def _query(self, params: dict[str, str]) -> dict[str, Any]:
        text = self._get_text(_QUERY_PATH, {**params, "apikey": self.api_key})
        if _SOFT_LIMIT_MARKER in text:
            raise ProviderRateLimited(self.name, "soft rate limit notice")

        payload = self._parse_json(text, _QUERY_PATH)
        if not isinstance(payload, dict):
            raise ProviderInvalidResponse(self.name, "response is not an object")
        if "Note" in payload or "Information" in payload:
            raise ProviderRateLimited(self.name, str(payload.get("Note") or payload.get("Information")))
        if "Error Message" in payload:
            raise ProviderNotFound(self.name, str(payload["Error Message"]))
        return payload

    def search(self, query: str) -> list[SymbolSearchResult]:
        payload = self._query({"function": "SYMBOL_SEARCH", "keywords": query})
        matches = payload.get("bestMatches")
        if not isinstance(matches, list):
            raise ProviderInvalidResponse(self.name, "missing bestMatches")

        results: list[SymbolSearchResult] = []
        for match in matches:
            if not isinstance(match, dict) or not match.get("1. symbol"):
                continue
            kind = match.get("3. type") or "stock"
            results.append(
                self._build(
                    SymbolSearchResult,
                    symbol=match["1. symbol"],
                    name=match.get("2. name") or "",
                    type=kind.lower() if isinstance(kind, str) else kind,
                    exchange=match.get("4. region"),
                    currency=match.get("8. currency"),
                )
            )
        return results

    def fetch_quote(self, symbol: str) -> Quote:
        payload = self._query({"function": "GLOBAL_QUOTE", "symbol": symbol})
        data = payload.get("Global Quote")
        # unknown tickers come back as an empty object
        if not data:
            raise ProviderNotFound(self.name, f"no quote for {symbol}")
        if not isinstance(data, dict):
            raise ProviderInvalidResponse(self.name, "Global Quote is not an object")

        fetched_at = self._now()
        latest_day = data.get("07. latest trading day")
        as_of = self._timestamp(latest_day, "latest trading day") if latest_day else fetched_at

        return self._build(
            Quote,
            symbol=data.get("01. symbol") or symbol,
            price=self._decimal(data.get("05. price"), "price"),
            as_of=as_of,
            fetched_at=fetched_at,
            provider=self.name,
        )
