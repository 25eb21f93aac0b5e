from __future__ import annotations

from typing import Any

from marketdesk.errors import ProviderInvalidResponse, ProviderNotFound
from marketdesk.providers.base import ProviderAdapter
from marketdesk.schemas.market import Quote, SymbolSearchResult

_SEARCH_PATH = "/stable/search-symbol"
_QUOTE_PATH = "/stable/quote"


class FmpAdapter(ProviderAdapter):
    """Financial Modeling Prep. Search and quotes; history is not on the free tier."""

    name = "fmp"

    def search(self, query: str) -> list[SymbolSearchResult]:
        payload = self._get_json(_SEARCH_PATH, {"query": query, "apikey": self.api_key})
        if not isinstance(payload, list):
            raise ProviderInvalidResponse(self.name, "search response is not a list")

        results: list[SymbolSearchResult] = []
        for item in payload:
            if not isinstance(item, dict) or not item.get("symbol"):
                continue
            results.append(
                self._build(
                    SymbolSearchResult,
                    symbol=item["symbol"],
                    name=item.get("name") or "",
                    type="stock",
                    exchange=item.get("exchange"),
                    currency=item.get("currency"),
                )
            )
        return results

    def fetch_quote(self, symbol: str) -> Quote:
        payload = self._get_json(_QUOTE_PATH, {"symbol": symbol, "apikey": self.api_key})
        if not isinstance(payload, list):
            raise ProviderInvalidResponse(self.name, "quote response is not a list")
        if not payload:
            raise ProviderNotFound(self.name, f"no quote for {symbol}")

        item: Any = payload[0]
        if not isinstance(item, dict):
            raise ProviderInvalidResponse(self.name, "quote item is not an object")

        fetched_at = self._now()
        timestamp = item.get("timestamp")
        as_of = self._epoch(timestamp, "timestamp") if timestamp is not None else fetched_at

        return self._build(
            Quote,
            symbol=item.get("symbol") or symbol,
            price=self._decimal(item.get("price"), "price"),
            as_of=as_of,
            fetched_at=fetched_at,
            provider=self.name,
        )
