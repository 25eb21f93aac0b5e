from __future__ import annotations

import logging
from collections.abc import Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from marketdesk.db.models import PriceBarRow
from marketdesk.db.quote_store import dialect_insert
from marketdesk.schemas.market import PriceBar
from marketdesk.utils import utc_now

logger = logging.getLogger(__name__)


async def upsert_price_bars(session: AsyncSession, bars: Sequence[PriceBar]) -> int:
    """Insert or overwrite bars keyed by (instrument, date). Caller commits."""
    written = 0
    fetched_at = utc_now()
    for bar in bars:
        if bar.instrument_id is None:
            raise ValueError(f"price bar for {bar.date} has no instrument id")
        stmt = dialect_insert(session, PriceBarRow).values(
            instrument_id=bar.instrument_id,
            bar_date=bar.date,
            provider=bar.provider,
            open=bar.open,
            high=bar.high,
            low=bar.low,
            close=bar.close,
            volume=bar.volume,
            fetched_at=fetched_at,
        )
        # Re-fetching a day replaces it; values are never merged.
        stmt = stmt.on_conflict_do_update(
            index_elements=[PriceBarRow.instrument_id, PriceBarRow.bar_date],
            set_={
                "provider": stmt.excluded.provider,
                "open": stmt.excluded.open,
                "high": stmt.excluded.high,
                "low": stmt.excluded.low,
                "close": stmt.excluded.close,
                "volume": stmt.excluded.volume,
                "fetched_at": stmt.excluded.fetched_at,
            },
        )
        await session.execute(stmt)
        written += 1
    logger.debug("Upserted %d price bars", written)
    return written
