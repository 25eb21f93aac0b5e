from __future__ import annotations

import datetime
from typing import Optional

from pydantic import BaseModel, Field


class ProviderLimits(BaseModel):
    daily_limit: int
    hourly_limit: Optional[int] = None
    # budgets roll over at midnight / top of hour in this zone
    reset_timezone: str = "UTC"


class ProviderBudget(BaseModel):
    provider: str
    used_today: int
    daily_limit: int
    used_this_hour: int
    hourly_limit: Optional[int] = None

    @property
    def remaining_today(self) -> int:
        return max(self.daily_limit - self.used_today, 0)


class StaleInstrument(BaseModel):
    instrument_id: str
    symbol: str
    last_updated: Optional[datetime.datetime] = None
    minutes_stale: Optional[int] = None


class FreshnessReport(BaseModel):
    all_fresh_within_minutes: Optional[int] = None
    stale_instruments: list[StaleInstrument] = Field(default_factory=list)


class MarketStatus(BaseModel):
    instrument_count: int
    polling_interval_seconds: int
    polling_active: bool
    budget: dict[str, ProviderBudget] = Field(default_factory=dict)
    freshness: FreshnessReport = Field(default_factory=FreshnessReport)


class RefreshSummary(BaseModel):
    refreshed: int = 0
    failed: int = 0
    rate_limited: bool = False
