"""Aggregation of telemetry events into durable rollups."""

from tally_analytics.aggregators.aggregation_job import (
    AggregationJob,
    AggregationResult,
    BackfillResult,
)
from tally_analytics.aggregators.rollup import ClickRollup
from tally_analytics.aggregators.scheduler import (
    AggregationScheduler,
    get_scheduler,
    start_scheduler,
    stop_scheduler,
)

__all__ = [
    "AggregationJob",
    "AggregationResult",
    "BackfillResult",
    "ClickRollup",
    "AggregationScheduler",
    "get_scheduler",
    "start_scheduler",
    "stop_scheduler",
]
