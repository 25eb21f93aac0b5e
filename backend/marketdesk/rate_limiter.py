from __future__ import annotations

import datetime
import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from zoneinfo import ZoneInfo

from marketdesk.schemas.status import ProviderBudget, ProviderLimits
from marketdesk.utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)


class Acquisition(str, Enum):
    ALLOWED = "allowed"
    DENIED = "denied"


@dataclass
class _Counters:
    day_bucket: datetime.date | None = None
    hour_bucket: tuple | None = None
    used_today: int = 0
    used_this_hour: int = 0


def _buckets(now: datetime.datetime, zone: ZoneInfo) -> tuple[datetime.date, tuple]:
    local = ensure_utc(now).astimezone(zone)
    # the offset keeps the repeated hour at a DST fall-back in its own bucket
    return local.date(), (local.date(), local.hour, local.utcoffset())


class RateLimiter:
    """Per-provider daily and hourly call budgets.

    Buckets are derived from the clock on every touch, so a counter resets the
    first time it is used in a new day or hour. No timer thread is needed.
    """

    def __init__(
        self,
        limits: Mapping[str, ProviderLimits],
        clock: Callable[[], datetime.datetime] = utc_now,
    ) -> None:
        self._limits = dict(limits)
        self._zones = {name: ZoneInfo(limit.reset_timezone) for name, limit in self._limits.items()}
        self._counters = {name: _Counters() for name in self._limits}
        self._clock = clock
        self._lock = threading.Lock()

    @property
    def providers(self) -> list[str]:
        return list(self._limits)

    def _limits_for(self, provider: str) -> ProviderLimits:
        try:
            return self._limits[provider]
        except KeyError:
            raise KeyError(f"no rate limits configured for provider {provider!r}") from None

    def try_acquire(self, provider: str) -> Acquisition:
        limits = self._limits_for(provider)
        with self._lock:
            counters = self._counters[provider]
            day, hour = _buckets(self._clock(), self._zones[provider])
            if counters.day_bucket != day:
                counters.day_bucket = day
                counters.used_today = 0
            if counters.hour_bucket != hour:
                counters.hour_bucket = hour
                counters.used_this_hour = 0

            if counters.used_today >= limits.daily_limit:
                logger.info("Daily budget for %s exhausted (%d)", provider, limits.daily_limit)
                return Acquisition.DENIED
            if limits.hourly_limit is not None and counters.used_this_hour >= limits.hourly_limit:
                logger.info("Hourly budget for %s exhausted (%d)", provider, limits.hourly_limit)
                return Acquisition.DENIED

            counters.used_today += 1
            counters.used_this_hour += 1
            return Acquisition.ALLOWED

    def get_budget(self, provider: str) -> ProviderBudget:
        limits = self._limits_for(provider)
        with self._lock:
            counters = self._counters[provider]
            day, hour = _buckets(self._clock(), self._zones[provider])
            used_today = counters.used_today if counters.day_bucket == day else 0
            used_this_hour = counters.used_this_hour if counters.hour_bucket == hour else 0
        return ProviderBudget(
            provider=provider,
            used_today=used_today,
            daily_limit=limits.daily_limit,
            used_this_hour=used_this_hour,
            hourly_limit=limits.hourly_limit,
        )
