from __future__ import annotations

import datetime
import threading
from typing import Protocol

from marketdesk.calendar.market_calendar import MarketCalendar
from marketdesk.schemas.market import LatestQuoteRecord, Quote
from marketdesk.utils import ensure_utc


class QuoteCache(Protocol):
    async def upsert(self, instrument_id: str, quote: Quote) -> LatestQuoteRecord: ...

    async def get_latest(self, instrument_id: str) -> LatestQuoteRecord | None: ...


class MemoryQuoteCache:
    """In-process latest-quote store, one record per instrument."""

    def __init__(self) -> None:
        self._records: dict[str, LatestQuoteRecord] = {}
        self._lock = threading.Lock()

    async def upsert(self, instrument_id: str, quote: Quote) -> LatestQuoteRecord:
        incoming = LatestQuoteRecord.from_quote(instrument_id, quote)
        with self._lock:
            current = self._records.get(instrument_id)
            if current is not None and ensure_utc(current.fetched_at) > ensure_utc(incoming.fetched_at):
                return current
            self._records[instrument_id] = incoming
            return incoming

    async def get_latest(self, instrument_id: str) -> LatestQuoteRecord | None:
        with self._lock:
            return self._records.get(instrument_id)


def is_fresh(
    record: LatestQuoteRecord,
    now: datetime.datetime,
    exchange: str | None,
    calendar: MarketCalendar,
    threshold_seconds: float,
) -> bool:
    """Whether less than ``threshold_seconds`` of open-market time passed since the fetch."""
    elapsed = calendar.trading_seconds_between(
        record.fetched_at, now, exchange, cap=threshold_seconds
    )
    return elapsed < threshold_seconds
