from __future__ import annotations

import datetime
import logging
from collections.abc import Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from marketdesk.schemas.market import ExchangeSession, Instrument
from marketdesk.utils import ensure_utc

logger = logging.getLogger(__name__)

DEFAULT_EXCHANGE = "NYSE"


class MarketCalendar:
    """Session membership per exchange.

    Exchanges missing from the mapping use the session of ``default_exchange``,
    unless ``exchange_of`` learned their zone from an instrument.
    Naive datetimes are interpreted as UTC.
    """

    def __init__(
        self,
        exchanges: Mapping[str, ExchangeSession],
        default_exchange: str = DEFAULT_EXCHANGE,
    ) -> None:
        self._exchanges = {code.upper(): session for code, session in exchanges.items()}
        self._default = self._exchanges.get(default_exchange.upper(), ExchangeSession())
        self._zones: dict[str, ZoneInfo] = {}

    def session_for(self, exchange: str | None) -> ExchangeSession:
        if not exchange:
            return self._default
        return self._exchanges.get(exchange.upper(), self._default)

    def exchange_of(self, instrument: Instrument) -> str:
        """Calendar key for ``instrument``.

        An unconfigured exchange whose instrument names a zone other than the
        default exchange's gets default session hours in that zone, no holidays.
        """
        code = (instrument.exchange or "").upper()
        if not code or code in self._exchanges:
            return code
        zone = instrument.exchange_tz
        if not zone or zone == self._default.timezone:
            return code
        try:
            ZoneInfo(zone)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone %r for exchange %s, using default session", zone, code)
            return code
        logger.info("Exchange %s not configured, using %s with default hours", code, zone)
        self._exchanges[code] = ExchangeSession(timezone=zone)
        return code

    def _zone(self, session: ExchangeSession) -> ZoneInfo:
        zone = self._zones.get(session.timezone)
        if zone is None:
            zone = ZoneInfo(session.timezone)
            self._zones[session.timezone] = zone
        return zone

    def local_date(self, timestamp: datetime.datetime, exchange: str | None) -> datetime.date:
        zone = self._zone(self.session_for(exchange))
        return ensure_utc(timestamp).astimezone(zone).date()

    def is_trading_day(self, day: datetime.date, exchange: str | None) -> bool:
        if day.weekday() >= 5:
            return False
        return day not in self.session_for(exchange).holidays

    def session_bounds(
        self, day: datetime.date, exchange: str | None
    ) -> tuple[datetime.datetime, datetime.datetime]:
        """Open and close of ``day``'s session as aware UTC datetimes."""
        session = self.session_for(exchange)
        zone = self._zone(session)
        opens = datetime.datetime.combine(day, session.open_time, tzinfo=zone)
        closes = datetime.datetime.combine(day, session.close_time, tzinfo=zone)
        return opens.astimezone(datetime.UTC), closes.astimezone(datetime.UTC)

    def is_market_open(self, timestamp: datetime.datetime, exchange: str | None) -> bool:
        day = self.local_date(timestamp, exchange)
        if not self.is_trading_day(day, exchange):
            return False
        opens, closes = self.session_bounds(day, exchange)
        return opens <= ensure_utc(timestamp) < closes

    def prior_trading_day(self, day: datetime.date, exchange: str | None) -> datetime.date:
        current = day - datetime.timedelta(days=1)
        while not self.is_trading_day(current, exchange):
            current -= datetime.timedelta(days=1)
        return current

    def next_trading_day(self, day: datetime.date, exchange: str | None) -> datetime.date:
        current = day + datetime.timedelta(days=1)
        while not self.is_trading_day(current, exchange):
            current += datetime.timedelta(days=1)
        return current

    def trading_seconds_between(
        self,
        start: datetime.datetime,
        end: datetime.datetime,
        exchange: str | None,
        cap: float | None = None,
    ) -> float:
        """Seconds of open-market time inside ``[start, end)``.

        Counting stops once ``cap`` is reached, which keeps long gaps cheap when
        the caller only compares against a threshold.
        """
        start = ensure_utc(start)
        end = ensure_utc(end)
        if end <= start:
            return 0.0

        total = 0.0
        day = self.local_date(start, exchange)
        last_day = self.local_date(end, exchange)
        while day <= last_day:
            if self.is_trading_day(day, exchange):
                opens, closes = self.session_bounds(day, exchange)
                overlap_start = max(opens, start)
                overlap_end = min(closes, end)
                if overlap_end > overlap_start:
                    total += (overlap_end - overlap_start).total_seconds()
                    if cap is not None and total >= cap:
                        return total
            day += datetime.timedelta(days=1)
        return total
