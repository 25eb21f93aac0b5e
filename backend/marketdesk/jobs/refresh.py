from __future__ import annotations

import asyncio
import datetime
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from pydantic import TypeAdapter
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketdesk.cache import MemoryQuoteCache, QuoteCache
from marketdesk.config.settings import Settings, settings
from marketdesk.db.bar_store import upsert_price_bars
from marketdesk.db.quote_store import SqlQuoteCache
from marketdesk.db.session import build_engine, build_session_factory
from marketdesk.factory import build_market_data_service
from marketdesk.schemas.market import Instrument
from marketdesk.schemas.status import RefreshSummary
from marketdesk.search_cache import SearchCache
from marketdesk.service import MarketDataService

logger = logging.getLogger(__name__)

_INSTRUMENTS = TypeAdapter(list[Instrument])


@asynccontextmanager
async def service_scope(
    config: Settings = settings,
) -> AsyncIterator[tuple[MarketDataService, async_sessionmaker[AsyncSession] | None]]:
    """A service whose engine and Redis client live only as long as one event loop."""
    engine = build_engine(config.database_url) if config.database_url else None
    search_cache = SearchCache.from_url(config.redis_url, config.search_cache_ttl_seconds)
    try:
        session_factory = None
        cache: QuoteCache = MemoryQuoteCache()
        if engine is not None:
            session_factory = build_session_factory(engine)
            cache = SqlQuoteCache(session_factory)
            await cache.create_schema()
        service = build_market_data_service(config, cache=cache, search_cache=search_cache)
        yield service, session_factory
    finally:
        await search_cache.close()
        if engine is not None:
            await engine.dispose()


async def _refresh(instruments: list[Instrument]) -> RefreshSummary:
    async with service_scope() as (service, _):
        return await service.refresh_all(instruments)


def run_refresh(instruments: list[dict[str, Any]]) -> dict[str, Any]:
    parsed = _INSTRUMENTS.validate_python(instruments)
    summary = asyncio.run(_refresh(parsed))
    return summary.model_dump()


async def _backfill(instrument: Instrument, start: datetime.date, end: datetime.date) -> int:
    async with service_scope() as (service, session_factory):
        if session_factory is None:
            raise RuntimeError("history backfill needs MARKETDESK_DATABASE_URL")
        bars = await service.get_history(instrument, start, end)
        async with session_factory() as session:
            written = await upsert_price_bars(session, bars)
            await session.commit()
    logger.info("Stored %d bars for %s (%s to %s)", written, instrument.symbol, start, end)
    return written


def run_history_backfill(instrument: dict[str, Any], start: str, end: str) -> int:
    return asyncio.run(
        _backfill(
            Instrument.model_validate(instrument),
            datetime.date.fromisoformat(start),
            datetime.date.fromisoformat(end),
        )
    )
