from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketdesk.db.models import Base, LatestQuote
from marketdesk.errors import QuoteCacheError
from marketdesk.schemas.market import LatestQuoteRecord, Quote
from marketdesk.utils import ensure_utc


def dialect_insert(session: AsyncSession, table):
    """``INSERT`` construct with ``ON CONFLICT`` support for the bound dialect."""
    dialect = session.bind.dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise QuoteCacheError(f"unsupported database dialect: {dialect}")


def _to_record(row: LatestQuote) -> LatestQuoteRecord:
    return LatestQuoteRecord(
        instrument_id=row.instrument_id,
        symbol=row.symbol,
        price=row.price,
        as_of=ensure_utc(row.as_of),
        fetched_at=ensure_utc(row.fetched_at),
        provider=row.provider,
    )


class SqlQuoteCache:
    """Latest-quote store backed by the ``latest_quotes`` table.

    The upsert is a single ``INSERT ... ON CONFLICT DO UPDATE`` guarded by the
    fetch timestamp, so concurrent writers settle on the newest fetch.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory

    async def create_schema(self) -> None:
        """Create the quote and price bar tables if they do not exist."""
        async with self._session_factory() as session:
            connection = await session.connection()
            await connection.run_sync(Base.metadata.create_all)
            await session.commit()

    async def upsert(self, instrument_id: str, quote: Quote) -> LatestQuoteRecord:
        values = {
            "instrument_id": instrument_id,
            "symbol": quote.symbol,
            "provider": quote.provider,
            "price": quote.price,
            "as_of": ensure_utc(quote.as_of),
            "fetched_at": ensure_utc(quote.fetched_at),
        }
        try:
            async with self._session_factory() as session:
                stmt = dialect_insert(session, LatestQuote).values(**values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=[LatestQuote.instrument_id],
                    set_={
                        "symbol": stmt.excluded.symbol,
                        "provider": stmt.excluded.provider,
                        "price": stmt.excluded.price,
                        "as_of": stmt.excluded.as_of,
                        "fetched_at": stmt.excluded.fetched_at,
                    },
                    where=LatestQuote.fetched_at <= stmt.excluded.fetched_at,
                )
                await session.execute(stmt)
                result = await session.execute(
                    select(LatestQuote).where(LatestQuote.instrument_id == instrument_id)
                )
                row = result.scalar_one()
                record = _to_record(row)
                await session.commit()
        except SQLAlchemyError as exc:
            raise QuoteCacheError(f"failed to store quote for {instrument_id}") from exc
        return record

    async def get_latest(self, instrument_id: str) -> LatestQuoteRecord | None:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(LatestQuote)
                    .where(LatestQuote.instrument_id == instrument_id)
                    .order_by(LatestQuote.fetched_at.desc())
                    .limit(1)
                )
                row = result.scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise QuoteCacheError(f"failed to read quote for {instrument_id}") from exc
        if row is None:
            return None
        return _to_record(row)
