from __future__ import annotations

import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class Instrument(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    symbol: str
    name: str = ""
    type: Literal["stock", "etf", "fund"] = "stock"
    currency: str = "USD"
    exchange: str = "NYSE"
    exchange_tz: str = "America/New_York"
    # provider name -> that provider's spelling of the ticker
    provider_symbols: dict[str, str] = Field(default_factory=dict)
    first_bar_date: Optional[datetime.date] = None


class Quote(BaseModel):
    model_config = ConfigDict(frozen=True)

    instrument_id: Optional[str] = None
    symbol: str
    price: Decimal
    as_of: datetime.datetime
    fetched_at: datetime.datetime
    provider: str


class LatestQuoteRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    instrument_id: str
    symbol: str
    price: Decimal
    as_of: datetime.datetime
    fetched_at: datetime.datetime
    provider: str

    @classmethod
    def from_quote(cls, instrument_id: str, quote: Quote) -> LatestQuoteRecord:
        return cls(
            instrument_id=instrument_id,
            symbol=quote.symbol,
            price=quote.price,
            as_of=quote.as_of,
            fetched_at=quote.fetched_at,
            provider=quote.provider,
        )

    def to_quote(self) -> Quote:
        return Quote(
            instrument_id=self.instrument_id,
            symbol=self.symbol,
            price=self.price,
            as_of=self.as_of,
            fetched_at=self.fetched_at,
            provider=self.provider,
        )


class PriceBar(BaseModel):
    model_config = ConfigDict(frozen=True)

    instrument_id: Optional[str] = None
    date: datetime.date
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Optional[int] = None
    provider: str


class SymbolSearchResult(BaseModel):
    symbol: str
    name: str
    type: Optional[str] = None
    exchange: Optional[str] = None
    currency: Optional[str] = None


class ExchangeSession(BaseModel):
    timezone: str = "America/New_York"
    open_time: datetime.time = datetime.time(9, 30)
    close_time: datetime.time = datetime.time(16, 0)
    holidays: frozenset[datetime.date] = Field(default_factory=frozenset)
