from __future__ import annotations

import datetime
from collections.abc import Sequence

from redis import Redis
from rq import Queue
from rq.job import Job

from marketdesk.config.settings import settings
from marketdesk.jobs.refresh import run_history_backfill, run_refresh
from marketdesk.schemas.market import Instrument


def get_redis_connection() -> Redis:
    return Redis.from_url(settings.redis_url)


def get_queue(name: str | None = None) -> Queue:
    queue_name = name or settings.refresh_queue_name
    return Queue(name=queue_name, connection=get_redis_connection())


def enqueue_refresh(instruments: Sequence[Instrument]) -> Job:
    queue = get_queue()
    return queue.enqueue(
        run_refresh,
        instruments=[instrument.model_dump(mode="json") for instrument in instruments],
    )


def enqueue_history_backfill(instrument: Instrument, start: datetime.date, end: datetime.date) -> Job:
    queue = get_queue()
    return queue.enqueue(
        run_history_backfill,
        instrument=instrument.model_dump(mode="json"),
        start=start.isoformat(),
        end=end.isoformat(),
    )
