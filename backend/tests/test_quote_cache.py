import asyncio
import datetime
from decimal import Decimal

from marketdesk.cache import MemoryQuoteCache, is_fresh
from marketdesk.calendar.market_calendar import MarketCalendar
from marketdesk.config.settings import settings
from marketdesk.schemas.market import LatestQuoteRecord, Quote

UTC = datetime.UTC


def build_quote(price: str, fetched_at: datetime.datetime, provider: str = "fmp") -> Quote:
    return Quote(
        symbol="VTI",
        price=Decimal(price),
        as_of=fetched_at - datetime.timedelta(seconds=5),
        fetched_at=fetched_at,
        provider=provider,
    )


def test_upsert_then_get_latest_returns_last_write() -> None:
    cache = MemoryQuoteCache()
    first = build_quote("250.00", datetime.datetime(2025, 6, 3, 14, 0, tzinfo=UTC))
    second = build_quote("251.40", datetime.datetime(2025, 6, 3, 14, 30, tzinfo=UTC), provider="alpha-vantage")

    async def scenario() -> LatestQuoteRecord | None:
        await cache.upsert("vti", first)
        await cache.upsert("vti", second)
        return await cache.get_latest("vti")

    record = asyncio.run(scenario())

    assert record == LatestQuoteRecord.from_quote("vti", second)


def test_older_fetch_does_not_replace_newer() -> None:
    cache = MemoryQuoteCache()
    newer = build_quote("251.40", datetime.datetime(2025, 6, 3, 14, 30, tzinfo=UTC))
    older = build_quote("249.00", datetime.datetime(2025, 6, 3, 14, 0, tzinfo=UTC))

    async def scenario() -> tuple[LatestQuoteRecord, LatestQuoteRecord | None]:
        await cache.upsert("vti", newer)
        kept = await cache.upsert("vti", older)
        return kept, await cache.get_latest("vti")

    kept, record = asyncio.run(scenario())

    assert kept.price == Decimal("251.40")
    assert record is not None
    assert record.price == Decimal("251.40")


def test_missing_instrument_returns_none() -> None:
    assert asyncio.run(MemoryQuoteCache().get_latest("nope")) is None


def test_records_are_per_instrument() -> None:
    cache = MemoryQuoteCache()
    fetched = datetime.datetime(2025, 6, 3, 14, 0, tzinfo=UTC)

    async def scenario() -> tuple[LatestQuoteRecord | None, LatestQuoteRecord | None]:
        await cache.upsert("vti", build_quote("251.40", fetched))
        await cache.upsert("voo", build_quote("540.10", fetched))
        return await cache.get_latest("vti"), await cache.get_latest("voo")

    vti, voo = asyncio.run(scenario())

    assert vti is not None and vti.price == Decimal("251.40")
    assert voo is not None and voo.price == Decimal("540.10")


def test_freshness_counts_only_trading_time() -> None:
    calendar = MarketCalendar(settings.exchanges)
    # fetched Friday 15:55 New York
    record = LatestQuoteRecord.from_quote(
        "vti", build_quote("251.40", datetime.datetime(2025, 6, 6, 19, 55, tzinfo=UTC))
    )

    saturday = datetime.datetime(2025, 6, 7, 18, 0, tzinfo=UTC)
    monday_open = datetime.datetime(2025, 6, 9, 13, 40, tzinfo=UTC)
    monday_later = datetime.datetime(2025, 6, 9, 14, 10, tzinfo=UTC)

    assert is_fresh(record, saturday, "NYSE", calendar, threshold_seconds=1800) is True
    assert is_fresh(record, monday_open, "NYSE", calendar, threshold_seconds=1800) is True
    assert is_fresh(record, monday_later, "NYSE", calendar, threshold_seconds=1800) is False


def test_fetch_in_the_future_is_fresh() -> None:
    calendar = MarketCalendar(settings.exchanges)
    record = LatestQuoteRecord.from_quote(
        "vti", build_quote("251.40", datetime.datetime(2025, 6, 3, 15, 0, tzinfo=UTC))
    )
    now = datetime.datetime(2025, 6, 3, 14, 0, tzinfo=UTC)
    assert is_fresh(record, now, "NYSE", calendar, threshold_seconds=60) is True
