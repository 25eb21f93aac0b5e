from __future__ import annotations

import logging

from marketdesk.cache import MemoryQuoteCache, QuoteCache
from marketdesk.calendar.market_calendar import MarketCalendar
from marketdesk.config.settings import Settings
from marketdesk.providers.base import ProviderAdapter
from marketdesk.providers.registry import build_adapters
from marketdesk.rate_limiter import RateLimiter
from marketdesk.search_cache import SearchCache
from marketdesk.service import MarketDataService

logger = logging.getLogger(__name__)


def _chain(names: list[str], adapters: dict[str, ProviderAdapter], label: str) -> list[ProviderAdapter]:
    chain = []
    for name in names:
        adapter = adapters.get(name)
        if adapter is None:
            logger.warning("%s chain names unavailable provider %s", label, name)
            continue
        chain.append(adapter)
    return chain


def build_market_data_service(
    settings: Settings,
    adapters: dict[str, ProviderAdapter] | None = None,
    cache: QuoteCache | None = None,
    search_cache: SearchCache | None = None,
) -> MarketDataService:
    """Construct one service per process from configuration.

    Without an explicit ``cache`` quotes are kept in memory.
    """
    if adapters is None:
        adapters = build_adapters(settings.providers)
    if cache is None:
        cache = MemoryQuoteCache()

    limiter = RateLimiter({name: adapter.limits for name, adapter in adapters.items()})
    batch = adapters.get(settings.batch_quote_provider) if settings.batch_quote_provider else None
    return MarketDataService(
        quote_chain=_chain(settings.quote_chain, adapters, "quote"),
        search_chain=_chain(settings.search_chain, adapters, "search"),
        history_provider=adapters.get(settings.history_provider),
        limiter=limiter,
        cache=cache,
        calendar=MarketCalendar(settings.exchanges),
        freshness_threshold_seconds=settings.effective_freshness_threshold,
        poll_interval_seconds=settings.poll_interval_seconds,
        search_cache=search_cache,
        batch_quote_provider=batch,
        refresh_concurrency=settings.refresh_concurrency,
    )
