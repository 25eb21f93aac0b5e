from __future__ import annotations

import math
from typing import Optional

from pydantic import BaseModel

# 09:30 to 16:00
MARKET_HOURS_SECONDS = 23_400
HOUR_SECONDS = 3_600


class BudgetCheck(BaseModel):
    ok: bool
    estimated_calls: int
    limit: int
    safe_interval_seconds: Optional[int] = None
    message: str


def _safe_interval(window_seconds: int, calls_per_cycle: int, limit: int) -> int:
    # whole cycles per window that still fit, at least one
    cycles_allowed = max(limit // calls_per_cycle, 1)
    return math.ceil(window_seconds / cycles_allowed)


def check_budget(
    instrument_count: int,
    poll_interval_seconds: int,
    daily_limit: int,
    batch_size: Optional[int] = None,
    hourly_limit: Optional[int] = None,
) -> BudgetCheck:
    """Estimate one session's quote calls and propose a safe interval when over budget.

    With ``batch_size`` a cycle costs one call per batch instead of one per
    instrument. ``hourly_limit`` is checked as well when the provider has one.
    """
    if poll_interval_seconds <= 0:
        raise ValueError("poll interval must be positive")
    if instrument_count == 0:
        return BudgetCheck(
            ok=True,
            estimated_calls=0,
            limit=daily_limit,
            message="No instruments tracked, no provider calls needed.",
        )

    calls_per_cycle = math.ceil(instrument_count / batch_size) if batch_size else instrument_count
    cycles = math.ceil(MARKET_HOURS_SECONDS / poll_interval_seconds)
    estimated_calls = calls_per_cycle * cycles
    hourly_calls = calls_per_cycle * math.ceil(HOUR_SECONDS / poll_interval_seconds)
    unit = f"{calls_per_cycle} batch calls" if batch_size else f"{instrument_count} instruments"
    plan = (
        f"Polling {unit} every {round(poll_interval_seconds / 60)}min "
        f"during market hours: ~{estimated_calls}/{daily_limit} calls per day."
    )

    over_daily = estimated_calls > daily_limit
    over_hourly = hourly_limit is not None and hourly_calls > hourly_limit
    if not over_daily and not over_hourly:
        return BudgetCheck(ok=True, estimated_calls=estimated_calls, limit=daily_limit, message=f"{plan} Budget OK.")

    if daily_limit <= 0 or (hourly_limit is not None and hourly_limit <= 0):
        return BudgetCheck(
            ok=False,
            estimated_calls=estimated_calls,
            limit=daily_limit,
            message=f"{plan} Provider has no budget.",
        )

    safe_interval = poll_interval_seconds
    if over_daily:
        safe_interval = max(safe_interval, _safe_interval(MARKET_HOURS_SECONDS, calls_per_cycle, daily_limit))
    if over_hourly:
        safe_interval = max(safe_interval, _safe_interval(HOUR_SECONDS, calls_per_cycle, hourly_limit))
    safe_calls = calls_per_cycle * math.ceil(MARKET_HOURS_SECONDS / safe_interval)
    return BudgetCheck(
        ok=False,
        estimated_calls=estimated_calls,
        limit=daily_limit,
        safe_interval_seconds=safe_interval,
        message=(
            f"{plan} Over budget, extending interval to {round(safe_interval / 60)}min "
            f"(~{safe_calls} calls per day)."
        ),
    )
