# backend/marketdesk/db/models.py

import datetime

from sqlalchemy import (
    BigInteger,
    Column,
    Date,
    DateTime,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

PRICE = Numeric(20, 8, asdecimal=True)


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


class LatestQuote(Base):
    __tablename__ = "latest_quotes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    instrument_id = Column(String, unique=True, nullable=False, index=True)
    symbol = Column(String, nullable=False)
    provider = Column(String, nullable=False)
    price = Column(PRICE, nullable=False)
    as_of = Column(DateTime(timezone=True), nullable=False)
    fetched_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def __repr__(self):
        return f"<LatestQuote(symbol='{self.symbol}', provider='{self.provider}')>"


class PriceBarRow(Base):
    __tablename__ = "price_bars"
    __table_args__ = (UniqueConstraint("instrument_id", "bar_date", name="uq_price_bars_instrument_date"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    instrument_id = Column(String, nullable=False, index=True)
    bar_date = Column(Date, nullable=False)
    provider = Column(String, nullable=False)
    open = Column(PRICE, nullable=False)
    high = Column(PRICE, nullable=False)
    low = Column(PRICE, nullable=False)
    close = Column(PRICE, nullable=False)
    volume = Column(BigInteger)
    fetched_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def __repr__(self):
        return f"<PriceBarRow(instrument_id='{self.instrument_id}', bar_date='{self.bar_date}')>"
