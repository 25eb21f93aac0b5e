from __future__ import annotations

import asyncio
import datetime
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, Literal

from marketdesk.cache import QuoteCache, is_fresh
from marketdesk.calendar.market_calendar import MarketCalendar
from marketdesk.errors import (
    MarketDataError,
    ProviderError,
    ProviderErrorKind,
    QuoteCacheError,
    RateLimitExhausted,
)
from marketdesk.providers.base import Capability, supports
from marketdesk.rate_limiter import Acquisition, RateLimiter
from marketdesk.schemas.market import Instrument, LatestQuoteRecord, PriceBar, Quote, SymbolSearchResult
from marketdesk.schemas.status import (
    FreshnessReport,
    MarketStatus,
    ProviderBudget,
    RefreshSummary,
    StaleInstrument,
)
from marketdesk.search_cache import SearchCache
from marketdesk.symbol_map import get_provider_symbol
from marketdesk.utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

_FAILURE_LEVELS = {
    ProviderErrorKind.RATE_LIMITED: logging.INFO,
    ProviderErrorKind.NOT_FOUND: logging.INFO,
    ProviderErrorKind.NETWORK_ERROR: logging.WARNING,
    ProviderErrorKind.TIMEOUT: logging.WARNING,
    ProviderErrorKind.INVALID_RESPONSE: logging.ERROR,
}


@dataclass
class _QuoteOutcome:
    quote: Quote | None = None
    source: Literal["provider", "cache"] | None = None
    rate_limited: bool = False


def _log_failure(operation: str, subject: str, exc: MarketDataError) -> None:
    if isinstance(exc, RateLimitExhausted):
        logger.info("%s %s: budget for %s exhausted, trying next source", operation, subject, exc.provider)
        return
    if isinstance(exc, ProviderError):
        logger.log(
            _FAILURE_LEVELS[exc.kind],
            "%s %s via %s failed (%s): %s",
            operation,
            subject,
            exc.provider,
            exc.kind.value,
            exc.message,
        )


def _is_rate_limit(exc: MarketDataError) -> bool:
    if isinstance(exc, RateLimitExhausted):
        return True
    return isinstance(exc, ProviderError) and exc.kind is ProviderErrorKind.RATE_LIMITED


class MarketDataService:
    """Fallback chains over rate-limited providers with a quote cache behind them.

    Quote order: primary provider, fresh cache, remaining providers, stale cache.
    ``refresh_all`` first asks the batch quote provider, when there is one, and
    runs that chain only for the instruments the batch missed.
    Search walks its chain and treats an empty answer as a miss. History has a
    single provider and surfaces its errors.
    """

    def __init__(
        self,
        *,
        quote_chain: Sequence[Any],
        search_chain: Sequence[Any],
        history_provider: Any | None,
        limiter: RateLimiter,
        cache: QuoteCache,
        calendar: MarketCalendar,
        freshness_threshold_seconds: float,
        poll_interval_seconds: int,
        search_cache: SearchCache | None = None,
        batch_quote_provider: Any | None = None,
        refresh_concurrency: int = 4,
        clock: Callable[[], datetime.datetime] = utc_now,
    ) -> None:
        self._quote_chain = self._filter_chain(quote_chain, Capability.QUOTE)
        self._search_chain = self._filter_chain(search_chain, Capability.SEARCH)
        self._history_provider = None
        if history_provider is not None:
            if supports(history_provider, Capability.HISTORY):
                self._history_provider = history_provider
            else:
                logger.warning("%s cannot serve history, ignoring it", history_provider.name)
        self._batch_provider = None
        if batch_quote_provider is not None:
            if supports(batch_quote_provider, Capability.BATCH_QUOTE):
                self._batch_provider = batch_quote_provider
            else:
                logger.warning("%s cannot serve batch quotes, ignoring it", batch_quote_provider.name)
        self._limiter = limiter
        self._cache = cache
        self.calendar = calendar
        self.freshness_threshold_seconds = freshness_threshold_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._search_cache = search_cache
        self._refresh_concurrency = max(refresh_concurrency, 1)
        self._clock = clock

    @staticmethod
    def _filter_chain(chain: Sequence[Any], capability: Capability) -> list[Any]:
        filtered = []
        for adapter in chain:
            if supports(adapter, capability):
                filtered.append(adapter)
            else:
                logger.warning("%s does not support %s, removed from chain", adapter.name, capability.value)
        return filtered

    @property
    def quote_providers(self) -> list[str]:
        return [adapter.name for adapter in self._quote_chain]

    @property
    def search_providers(self) -> list[str]:
        return [adapter.name for adapter in self._search_chain]

    @property
    def batch_quote_provider(self) -> str | None:
        return self._batch_provider.name if self._batch_provider is not None else None

    @property
    def batch_size(self) -> int | None:
        return self._batch_provider.batch_size if self._batch_provider is not None else None

    def get_budget(self, provider: str) -> ProviderBudget:
        return self._limiter.get_budget(provider)

    async def _call(self, adapter: Any, fn: Callable[..., Any], *args: Any) -> Any:
        if self._limiter.try_acquire(adapter.name) is Acquisition.DENIED:
            raise RateLimitExhausted(adapter.name)
        # adapters block on urllib; keep the event loop free
        return await asyncio.to_thread(fn, *args)

    async def _read_cache(self, instrument_id: str) -> LatestQuoteRecord | None:
        try:
            return await self._cache.get_latest(instrument_id)
        except QuoteCacheError:
            logger.exception("Quote cache read failed for %s", instrument_id)
            return None

    async def _write_cache(self, instrument_id: str, quote: Quote) -> None:
        try:
            await self._cache.upsert(instrument_id, quote)
        except QuoteCacheError:
            logger.exception("Quote cache write failed for %s", instrument_id)

    def _is_fresh(self, record: LatestQuoteRecord, instrument: Instrument, now: datetime.datetime) -> bool:
        exchange = self.calendar.exchange_of(instrument)
        return is_fresh(record, now, exchange, self.calendar, self.freshness_threshold_seconds)

    async def _resolve_quote(self, instrument: Instrument) -> _QuoteOutcome:
        outcome = _QuoteOutcome()
        cached: LatestQuoteRecord | None = None
        cache_checked = False

        for position, adapter in enumerate(self._quote_chain):
            if position == 1:
                cached = await self._read_cache(instrument.id)
                cache_checked = True
                if cached is not None and self._is_fresh(cached, instrument, self._clock()):
                    logger.debug("Serving fresh cached quote for %s", instrument.symbol)
                    outcome.quote = cached.to_quote()
                    outcome.source = "cache"
                    return outcome

            symbol = get_provider_symbol(instrument, adapter.name)
            try:
                quote = await self._call(adapter, adapter.fetch_quote, symbol)
            except (RateLimitExhausted, ProviderError) as exc:
                _log_failure("quote", instrument.symbol, exc)
                outcome.rate_limited = outcome.rate_limited or _is_rate_limit(exc)
                continue

            normalized = quote.model_copy(update={"instrument_id": instrument.id, "symbol": instrument.symbol})
            await self._write_cache(instrument.id, normalized)
            outcome.quote = normalized
            outcome.source = "provider"
            return outcome

        if not cache_checked:
            cached = await self._read_cache(instrument.id)
        if cached is not None:
            logger.info("All quote providers failed for %s, serving cached quote", instrument.symbol)
            outcome.quote = cached.to_quote()
            outcome.source = "cache"
        else:
            logger.info("No quote available for %s", instrument.symbol)
        return outcome

    async def get_quote(self, instrument: Instrument) -> Quote | None:
        outcome = await self._resolve_quote(instrument)
        return outcome.quote

    async def search_symbols(self, query: str) -> list[SymbolSearchResult]:
        query = query.strip()
        if not query:
            return []

        if self._search_cache is not None:
            cached = await self._search_cache.get(query)
            if cached is not None:
                return cached

        for adapter in self._search_chain:
            try:
                results = await self._call(adapter, adapter.search, query)
            except (RateLimitExhausted, ProviderError) as exc:
                _log_failure("search", repr(query), exc)
                continue
            if not results:
                logger.debug("%s returned no matches for %r", adapter.name, query)
                continue
            if self._search_cache is not None:
                await self._search_cache.set(query, results)
            return results
        return []

    async def get_history(
        self, instrument: Instrument, start: datetime.date, end: datetime.date
    ) -> list[PriceBar]:
        if end < start:
            raise ValueError(f"history range ends before it starts: {start} > {end}")
        adapter = self._history_provider
        if adapter is None:
            raise MarketDataError("no history provider configured")

        symbol = get_provider_symbol(instrument, adapter.name)
        try:
            bars = await self._call(adapter, adapter.fetch_history, symbol, start, end)
        except (RateLimitExhausted, ProviderError) as exc:
            _log_failure("history", instrument.symbol, exc)
            raise

        by_date: dict[datetime.date, PriceBar] = {}
        for bar in bars:
            if start <= bar.date <= end:
                by_date[bar.date] = bar.model_copy(update={"instrument_id": instrument.id})
        return [by_date[day] for day in sorted(by_date)]

    async def _refresh_batch(self, instruments: Sequence[Instrument]) -> tuple[dict[str, _QuoteOutcome], bool]:
        """One request per ``batch_size`` tickers; returns outcomes by instrument id."""
        adapter = self._batch_provider
        by_symbol: dict[str, list[Instrument]] = {}
        for instrument in instruments:
            by_symbol.setdefault(get_provider_symbol(instrument, adapter.name).upper(), []).append(instrument)

        symbols = list(by_symbol)
        outcomes: dict[str, _QuoteOutcome] = {}
        rate_limited = False
        for offset in range(0, len(symbols), adapter.batch_size):
            chunk = symbols[offset : offset + adapter.batch_size]
            try:
                quotes = await self._call(adapter, adapter.fetch_batch_quotes, chunk)
            except (RateLimitExhausted, ProviderError) as exc:
                _log_failure("batch quote", f"{len(chunk)} symbols", exc)
                rate_limited = rate_limited or _is_rate_limit(exc)
                continue
            for quote in quotes:
                for instrument in by_symbol.get(quote.symbol.upper(), []):
                    if instrument.id in outcomes:
                        continue
                    normalized = quote.model_copy(update={"instrument_id": instrument.id, "symbol": instrument.symbol})
                    await self._write_cache(instrument.id, normalized)
                    outcomes[instrument.id] = _QuoteOutcome(quote=normalized, source="provider")

        logger.info(
            "Batch quotes from %s covered %d of %d instruments", adapter.name, len(outcomes), len(instruments)
        )
        return outcomes, rate_limited

    async def refresh_all(self, instruments: Sequence[Instrument]) -> RefreshSummary:
        instruments = list(instruments)
        batch_outcomes: dict[str, _QuoteOutcome] = {}
        batch_rate_limited = False
        if self._batch_provider is not None and instruments:
            try:
                batch_outcomes, batch_rate_limited = await self._refresh_batch(instruments)
            except Exception:
                logger.exception("Batch refresh via %s failed", self._batch_provider.name)

        semaphore = asyncio.Semaphore(self._refresh_concurrency)

        async def refresh_one(instrument: Instrument) -> _QuoteOutcome | None:
            async with semaphore:
                try:
                    return await self._resolve_quote(instrument)
                except Exception:
                    logger.exception("Refreshing %s failed", instrument.symbol)
                    return None

        misses = [instrument for instrument in instruments if instrument.id not in batch_outcomes]
        outcomes: list[_QuoteOutcome | None] = list(batch_outcomes.values())
        outcomes.extend(await asyncio.gather(*(refresh_one(instrument) for instrument in misses)))

        summary = RefreshSummary(rate_limited=batch_rate_limited)
        for outcome in outcomes:
            if outcome is not None and outcome.source == "provider":
                summary.refreshed += 1
            else:
                summary.failed += 1
            if outcome is not None and outcome.rate_limited:
                summary.rate_limited = True
        logger.info(
            "Refresh finished: %d refreshed, %d failed, rate_limited=%s",
            summary.refreshed,
            summary.failed,
            summary.rate_limited,
        )
        return summary

    async def get_status(
        self, instruments: Sequence[Instrument], now: datetime.datetime | None = None
    ) -> MarketStatus:
        now = ensure_utc(now or self._clock())
        polling_active = any(
            self.calendar.is_market_open(now, self.calendar.exchange_of(instrument)) for instrument in instruments
        )
        budget = {name: self._limiter.get_budget(name) for name in self._limiter.providers}

        stale: list[StaleInstrument] = []
        oldest_minutes = 0
        for instrument in instruments:
            record = await self._read_cache(instrument.id)
            if record is None:
                stale.append(StaleInstrument(instrument_id=instrument.id, symbol=instrument.symbol))
                continue
            age_minutes = int(max((now - ensure_utc(record.fetched_at)).total_seconds(), 0) // 60)
            oldest_minutes = max(oldest_minutes, age_minutes)
            if not self._is_fresh(record, instrument, now):
                stale.append(
                    StaleInstrument(
                        instrument_id=instrument.id,
                        symbol=instrument.symbol,
                        last_updated=record.fetched_at,
                        minutes_stale=age_minutes,
                    )
                )

        freshness = FreshnessReport(
            all_fresh_within_minutes=oldest_minutes if instruments and not stale else None,
            stale_instruments=stale,
        )
        return MarketStatus(
            instrument_count=len(instruments),
            polling_interval_seconds=self.poll_interval_seconds,
            polling_active=polling_active,
            budget=budget,
            freshness=freshness,
        )
