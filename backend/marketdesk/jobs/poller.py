from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path

from pydantic import TypeAdapter

from marketdesk.config.settings import Settings, settings
from marketdesk.jobs.budget import check_budget
from marketdesk.jobs.refresh import service_scope
from marketdesk.schemas.market import Instrument
from marketdesk.schemas.status import RefreshSummary
from marketdesk.service import MarketDataService
from marketdesk.utils import setup_logging, utc_now

logger = logging.getLogger(__name__)

InstrumentSource = Callable[[], Awaitable[Sequence[Instrument]]]

_INSTRUMENTS = TypeAdapter(list[Instrument])


class Poller:
    """Refreshes quotes while markets are open, plus one pass after the close.

    Cycles run back to back with a sleep in between, so they never overlap.
    ``stop()`` interrupts any pending sleep.
    """

    def __init__(
        self,
        service: MarketDataService,
        fetch_instruments: InstrumentSource,
        poll_interval_seconds: float,
        post_close_delay_seconds: float,
        clock=utc_now,
    ) -> None:
        self._service = service
        self._fetch_instruments = fetch_instruments
        self._poll_interval_seconds = poll_interval_seconds
        self._post_close_delay_seconds = post_close_delay_seconds
        self._clock = clock
        self._stop = asyncio.Event()
        self._running = False
        self._was_market_open = False
        self._post_close_done = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        logger.info("Poller shutdown requested")
        self._stop.set()

    async def _sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; True when woken by ``stop()``."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True

    async def run_cycle(self) -> RefreshSummary | None:
        now = self._clock()
        instruments = list(await self._fetch_instruments())
        if not instruments:
            logger.info("No instruments tracked, nothing to poll")
            return None

        calendar = self._service.calendar
        open_instruments = [
            item for item in instruments if calendar.is_market_open(now, calendar.exchange_of(item))
        ]
        if open_instruments:
            summary = await self._service.refresh_all(open_instruments)
            self._was_market_open = True
            self._post_close_done = False
            return summary

        if self._was_market_open and not self._post_close_done:
            logger.info("Market closed, post-close refresh in %ss", self._post_close_delay_seconds)
            if await self._sleep(self._post_close_delay_seconds):
                return None
            summary = await self._service.refresh_all(instruments)
            logger.info("Post-close refresh done for %d instruments", len(instruments))
            self._post_close_done = True
            self._was_market_open = False
            return summary

        self._was_market_open = False
        return None

    async def run(self) -> None:
        if self._running:
            logger.warning("Poller already running")
            return
        self._running = True
        self._stop.clear()
        logger.info("Poller started, interval %ss", self._poll_interval_seconds)
        try:
            while not self._stop.is_set():
                try:
                    await self.run_cycle()
                except Exception:
                    logger.exception("Poll cycle failed")
                if not self._stop.is_set():
                    await self._sleep(self._poll_interval_seconds)
        finally:
            self._running = False
            logger.info("Poller stopped")


def load_instruments(path: str) -> list[Instrument]:
    source = Path(path)
    if not source.exists():
        logger.warning("Instrument file %s not found", path)
        return []
    return _INSTRUMENTS.validate_json(source.read_bytes())


async def _run(config: Settings) -> None:
    async with service_scope(config) as (service, _):
        await _poll(config, service)


async def _poll(config: Settings, service: MarketDataService) -> None:
    async def fetch_instruments() -> list[Instrument]:
        return await asyncio.to_thread(load_instruments, config.instruments_file)

    interval = config.poll_interval_seconds
    instruments = await fetch_instruments()
    # batch polling costs one call per batch, the single-quote chain only covers misses
    budget_provider = service.batch_quote_provider
    if budget_provider is None and service.quote_providers:
        budget_provider = service.quote_providers[0]
    if budget_provider is not None:
        budget = service.get_budget(budget_provider)
        result = check_budget(
            len(instruments),
            interval,
            budget.daily_limit,
            batch_size=service.batch_size if service.batch_quote_provider else None,
            hourly_limit=budget.hourly_limit,
        )
        logger.info("%s (%s)", result.message, budget_provider)
        if result.safe_interval_seconds is not None:
            interval = max(interval, result.safe_interval_seconds)
    else:
        logger.warning("No quote providers configured, polling serves cached quotes only")

    poller = Poller(
        service,
        fetch_instruments,
        poll_interval_seconds=interval,
        post_close_delay_seconds=config.post_close_delay_seconds,
    )
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, poller.stop)
    await poller.run()


def main() -> None:
    setup_logging(settings.log_level)
    asyncio.run(_run(settings))


if __name__ == "__main__":
    main()
