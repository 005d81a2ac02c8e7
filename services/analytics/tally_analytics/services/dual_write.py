"""Real-time dual-write of clicks into durable aggregates.

When enabled, every consumed click also bumps the rollup rows for its day,
so durable reads see today's traffic before the aggregation job has run.
The job later replaces these incremented rows with exact counts.
"""

import structlog
from tally_shared import ClickEvent

from tally_analytics.aggregators.rollup import ClickRollup
from tally_analytics.core.errors import AggregateWriteError
from tally_analytics.services.aggregate_store import AggregateStore
from tally_analytics.services.settings_provider import AggregationSettingsProvider
from tally_analytics.telemetry.writer import TelemetryWriter

logger = structlog.get_logger()


class DualWriteHandler:
    def __init__(
        self,
        store: AggregateStore,
        settings_provider: AggregationSettingsProvider,
        writer: TelemetryWriter,
        enabled: bool = True,
    ):
        self._store = store
        self._settings_provider = settings_provider
        self._writer = writer
        self.enabled = enabled
        self._written = 0
        self._failed = 0

    async def handle_click(self, event: ClickEvent) -> bool:
        """Increment rollups for one click. Returns True if rows were written."""
        if not self.enabled:
            return False

        settings = await self._settings_provider.get()
        if not settings.enabled:
            return False

        # Same normalization as the telemetry write path, bots included
        point = self._writer.build_data_point(event)
        if point is None:
            return False

        rollup = ClickRollup()
        if not rollup.add(point.to_raw_event()):
            return False

        rows = rollup.rows()
        for _, table_rows in rows.by_model():
            for row in table_rows:
                row["unique_visitors"] = 1

        try:
            await self._store.increment(rows)
        except AggregateWriteError as e:
            self._failed += 1
            logger.warning("Dual-write increment failed", link_id=str(event.link_id), error=e.message)
            return False

        self._written += 1
        return True

    @property
    def stats(self) -> dict:
        return {
            "enabled": self.enabled,
            "written": self._written,
            "failed": self._failed,
        }
