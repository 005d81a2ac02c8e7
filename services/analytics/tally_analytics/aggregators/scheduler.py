"""Background scheduler for the daily aggregation run."""

import asyncio
from datetime import date

import structlog

from tally_analytics.aggregators.aggregation_job import AggregationJob
from tally_analytics.core.config import get_settings
from tally_analytics.services.aggregate_store import AggregateStore
from tally_analytics.services.settings_provider import (
    AggregationSettingsProvider,
    get_settings_provider,
)
from tally_analytics.telemetry.query import get_telemetry_client

logger = structlog.get_logger()


class AggregationScheduler:
    """Runs the aggregation job for the newest eligible day on an interval.

    The job replaces rollups, so running it more than once for a day is
    harmless; the scheduler still remembers the last day it completed and
    skips it until the date moves on.

    Usage:
        scheduler = AggregationScheduler(job, settings_provider)
        await scheduler.start()
        # ... later ...
        await scheduler.stop()
    """

    def __init__(
        self,
        job: AggregationJob,
        settings_provider: AggregationSettingsProvider,
        interval: float = 3600.0,
    ):
        """Initialize the scheduler.

        Args:
            job: Aggregation job to run.
            settings_provider: Source of the enabled flag and threshold.
            interval: Seconds between checks.
        """
        self.job = job
        self._settings_provider = settings_provider
        self._interval = interval
        self._running = False
        self._task: asyncio.Task | None = None
        self._runs = 0
        self._failures = 0
        self._last_completed: date | None = None

    async def start(self) -> None:
        """Start the background scheduler."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Aggregation scheduler started", interval=self._interval)

    async def stop(self) -> None:
        """Stop the background scheduler."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("Aggregation scheduler stopped", runs=self._runs, failures=self._failures)

    async def _loop(self) -> None:
        try:
            while self._running:
                await asyncio.sleep(self._interval)
                try:
                    await self.run_once()
                except Exception as e:
                    self._failures += 1
                    logger.error("Scheduled aggregation failed", error=str(e))
        except asyncio.CancelledError:
            pass

    async def run_once(self) -> bool:
        """Aggregate the newest eligible day if enabled and not done yet.

        Returns True if the job ran to completion.
        """
        settings = await self._settings_provider.get()
        if not settings.enabled:
            logger.debug("Aggregation disabled, scheduler idle")
            return False

        target = await self.job.newest_eligible_date()
        if target == self._last_completed:
            return False

        if not self.job.telemetry_configured:
            logger.debug("Telemetry not configured, scheduler idle")
            return False

        result = await self.job.aggregate_date(target)
        self._runs += 1
        if result.errors:
            return False

        self._last_completed = target
        return True

    @property
    def stats(self) -> dict:
        """Get scheduler statistics."""
        return {
            "running": self._running,
            "runs": self._runs,
            "failures": self._failures,
            "last_completed": self._last_completed.isoformat() if self._last_completed else None,
        }


# Global scheduler instance
_scheduler: AggregationScheduler | None = None


def get_scheduler() -> AggregationScheduler:
    """Get the global scheduler instance, creating it if necessary."""
    global _scheduler
    if _scheduler is None:
        settings = get_settings()
        provider = get_settings_provider()
        job = AggregationJob(
            get_telemetry_client(),
            AggregateStore(batch_size=settings.aggregation_batch_size),
            provider,
        )
        _scheduler = AggregationScheduler(job, provider, interval=settings.aggregation_interval_seconds)
    return _scheduler


async def start_scheduler() -> None:
    """Start the global scheduler."""
    await get_scheduler().start()


async def stop_scheduler() -> None:
    """Stop the global scheduler."""
    await get_scheduler().stop()
