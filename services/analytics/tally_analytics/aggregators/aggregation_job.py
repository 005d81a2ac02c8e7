"""Roll telemetry events up into durable aggregates once they pass the threshold."""

import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any

import structlog

from tally_analytics.aggregators.rollup import ClickRollup
from tally_analytics.core.errors import AggregateWriteError, TelemetryQueryError
from tally_analytics.core.observability import record_aggregation
from tally_analytics.routing.date_range import should_aggregate_date, threshold_date_for, utc_today
from tally_analytics.services.aggregate_store import AggregateStore
from tally_analytics.services.settings_provider import AggregationSettingsProvider
from tally_analytics.telemetry.query import TelemetryFilters, TelemetryQueryClient

logger = structlog.get_logger()


@dataclass(frozen=True)
class AggregationResult:
    """Outcome for one date.

    ``skipped`` means the date is still inside the live window. A run with
    ``processed=0, errors=0, skipped=False`` was postponed because telemetry
    credentials are missing.
    """

    processed: int = 0
    errors: int = 0
    skipped: bool = False


@dataclass(frozen=True)
class BackfillResult:
    processed: int = 0
    errors: int = 0
    skipped: int = 0
    dates: int = 0


class AggregationJob:
    """Reads one day of raw events from telemetry and replaces its rollups.

    Usage:
        job = AggregationJob(telemetry_client, AggregateStore(), settings_provider)
        result = await job.aggregate_threshold_date()
        totals = await job.backfill(days_back=180)
    """

    def __init__(
        self,
        telemetry: TelemetryQueryClient,
        store: AggregateStore,
        settings_provider: AggregationSettingsProvider,
        clock: Callable[[], date] = utc_today,
    ):
        self._telemetry = telemetry
        self._store = store
        self._settings_provider = settings_provider
        self._clock = clock

    @property
    def telemetry_configured(self) -> bool:
        return self._telemetry.is_configured

    async def aggregate_date(
        self,
        target_date: date,
        link_ids: Sequence[Any] | None = None,
    ) -> AggregationResult:
        """Aggregate every event of ``target_date`` (UTC).

        Raises:
            AggregateWriteError: A batch of upserts failed. Earlier batches
                stay committed; re-running the date replaces them.
        """
        settings = await self._settings_provider.get()
        today = self._clock()

        if not should_aggregate_date(target_date, settings.threshold_days, today):
            logger.debug(
                "Date still inside live window, skipping aggregation",
                date=target_date.isoformat(),
                threshold_days=settings.threshold_days,
            )
            return AggregationResult(skipped=True)

        if not self._telemetry.is_configured:
            logger.warning(
                "Telemetry not configured, postponing aggregation",
                date=target_date.isoformat(),
            )
            return AggregationResult()

        started = time.perf_counter()
        filters = TelemetryFilters.build(link_ids)

        try:
            events = await self._telemetry.raw_events_batched(target_date, target_date, filters)
        except TelemetryQueryError as e:
            record_aggregation("error", time.perf_counter() - started, 0)
            logger.error(
                "Failed to read events for aggregation",
                date=target_date.isoformat(),
                error=e.message,
            )
            return AggregationResult(errors=1)

        rollup = ClickRollup()
        for event in events:
            rollup.add(event)

        try:
            rows_upserted = await self._store.replace(
                rollup.rows(),
                target_date=target_date,
                batch_size=settings.batch_size,
            )
        except AggregateWriteError:
            record_aggregation("error", time.perf_counter() - started, rollup.events)
            raise

        await self._store.update_link_visitor_totals(rollup.link_visitor_totals())

        duration = time.perf_counter() - started
        record_aggregation("success", duration, rollup.events)
        logger.info(
            "Aggregation complete",
            date=target_date.isoformat(),
            events=rollup.events,
            rejected=rollup.rejected,
            rows_upserted=rows_upserted,
            duration_ms=round(duration * 1000, 2),
        )
        return AggregationResult(processed=rollup.events)

    async def newest_eligible_date(self) -> date:
        """The most recent day old enough to be aggregated."""
        settings = await self._settings_provider.get()
        return threshold_date_for(settings.threshold_days, self._clock()) - timedelta(days=1)

    async def aggregate_threshold_date(self) -> AggregationResult:
        """Aggregate the day that has just aged out of the live window."""
        return await self.aggregate_date(await self.newest_eligible_date())

    async def backfill(
        self,
        days_back: int = 180,
        link_ids: Sequence[Any] | None = None,
    ) -> BackfillResult:
        """Aggregate every eligible day from ``today - days_back`` up to the threshold.

        A day whose durable write fails counts as one error; the loop moves on.
        """
        settings = await self._settings_provider.get()
        today = self._clock()
        threshold_date = threshold_date_for(settings.threshold_days, today)

        processed = errors = skipped = dates = 0
        current = today - timedelta(days=days_back)

        logger.info(
            "Backfill started",
            start_date=current.isoformat(),
            threshold_date=threshold_date.isoformat(),
        )

        while current < threshold_date:
            dates += 1
            try:
                result = await self.aggregate_date(current, link_ids)
            except AggregateWriteError as e:
                errors += 1
                logger.error(
                    "Backfill date failed",
                    date=current.isoformat(),
                    batch_index=e.batch_index,
                )
            else:
                processed += result.processed
                errors += result.errors
                skipped += int(result.skipped)
            current += timedelta(days=1)

        logger.info(
            "Backfill complete",
            dates=dates,
            processed=processed,
            errors=errors,
            skipped=skipped,
        )
        return BackfillResult(processed=processed, errors=errors, skipped=skipped, dates=dates)
