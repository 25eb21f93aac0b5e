from __future__ import annotations

import datetime
import logging
import re
from typing import Any
from urllib.parse import quote as url_quote

from marketdesk.errors import ProviderInvalidResponse, ProviderNotFound, ProviderRateLimited
from marketdesk.providers.base import ProviderAdapter
from marketdesk.schemas.market import PriceBar, Quote

logger = logging.getLogger(__name__)

_IEX_PATH = "/iex/{symbol}"
_IEX_BATCH_PATH = "/iex/"
_DAILY_PATH = "/tiingo/daily/{symbol}/prices"
_THROTTLE_TEXT = re.compile(r"rate limit|exceeded .*limit|request allocation", re.IGNORECASE)


def _first(item: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = item.get(key)
        if value is not None:
            return value
    return None


class TiingoAdapter(ProviderAdapter):
    """Tiingo. IEX quotes, batched IEX quotes and split/dividend adjusted daily history.

    Errors are sometimes returned as plain text with HTTP 200. Throttling notices
    in that form count as rate limiting, anything else as an invalid response.
    """

    name = "tiingo"
    # tickers per IEX request, keeps the URL short
    batch_size = 50

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Token {self.api_key}"}

    def _request(self, path: str, params: dict[str, str]) -> Any:
        text = self._get_text(path, params, self._headers())
        try:
            return self._parse_json(text, path)
        except ProviderInvalidResponse:
            if _THROTTLE_TEXT.search(text):
                raise ProviderRateLimited(self.name, text.strip()[:200]) from None
            raise

    def _quote(self, item: dict[str, Any], symbol: str | None, fetched_at: datetime.datetime) -> Quote:
        stamp = _first(item, "lastSaleTimestamp", "timestamp")
        as_of = self._timestamp(stamp, "timestamp") if stamp else fetched_at
        return self._build(
            Quote,
            symbol=item.get("ticker") or symbol,
            price=self._decimal(_first(item, "tngoLast", "last"), "last price"),
            as_of=as_of,
            fetched_at=fetched_at,
            provider=self.name,
        )

    def fetch_quote(self, symbol: str) -> Quote:
        payload = self._request(_IEX_PATH.format(symbol=url_quote(symbol, safe="")), {})
        if not isinstance(payload, list):
            raise ProviderInvalidResponse(self.name, "IEX response is not a list")
        if not payload:
            raise ProviderNotFound(self.name, f"no quote for {symbol}")

        item = payload[0]
        if not isinstance(item, dict):
            raise ProviderInvalidResponse(self.name, "IEX item is not an object")
        return self._quote(item, symbol, self._now())

    def fetch_batch_quotes(self, symbols: list[str]) -> list[Quote]:
        """Quotes for many tickers, ``batch_size`` per request.

        Tickers Tiingo does not know are left out of the result, as are items
        without a ticker or a usable price. A failing request raises.
        """
        quotes: list[Quote] = []
        for offset in range(0, len(symbols), self.batch_size):
            chunk = symbols[offset : offset + self.batch_size]
            payload = self._request(_IEX_BATCH_PATH, {"tickers": ",".join(chunk)})
            if not isinstance(payload, list):
                raise ProviderInvalidResponse(self.name, "IEX batch response is not a list")

            fetched_at = self._now()
            for item in payload:
                if not isinstance(item, dict) or not item.get("ticker"):
                    continue
                try:
                    quotes.append(self._quote(item, None, fetched_at))
                except ProviderInvalidResponse as exc:
                    logger.warning("Skipping batch quote for %s: %s", item.get("ticker"), exc.message)
        return quotes

    def fetch_history(self, symbol: str, start: datetime.date, end: datetime.date) -> list[PriceBar]:
        path = _DAILY_PATH.format(symbol=url_quote(symbol, safe=""))
        payload = self._request(path, {"startDate": start.isoformat(), "endDate": end.isoformat()})
        if not isinstance(payload, list):
            raise ProviderInvalidResponse(self.name, "history response is not a list")
        if not payload:
            raise ProviderNotFound(self.name, f"no history for {symbol} between {start} and {end}")

        bars: list[PriceBar] = []
        for item in payload:
            if not isinstance(item, dict):
                raise ProviderInvalidResponse(self.name, "history item is not an object")
            bars.append(
                self._build(
                    PriceBar,
                    date=self._timestamp(item.get("date"), "date").date(),
                    open=self._decimal(_first(item, "adjOpen", "open"), "open"),
                    high=self._decimal(_first(item, "adjHigh", "high"), "high"),
                    low=self._decimal(_first(item, "adjLow", "low"), "low"),
                    close=self._decimal(_first(item, "adjClose", "close"), "close"),
                    volume=self._int(_first(item, "adjVolume", "volume"), "volume"),
                    provider=self.name,
                )
            )
        return bars
