"""Query routing between the telemetry store and durable aggregates."""

from tally_analytics.routing.date_range import (
    DayRange,
    SplitDateRange,
    should_aggregate_date,
    split_date_range,
    threshold_date_for,
    utc_today,
)
from tally_analytics.routing.merger import (
    merge_batches,
    merge_ranges,
    merge_summaries,
    merge_summary_batches,
    sort_rows,
)
from tally_analytics.routing.source_selector import (
    DataSourcePreference,
    SourceDecision,
    UnavailableRange,
    select_sources,
)

__all__ = [
    "DayRange",
    "SplitDateRange",
    "should_aggregate_date",
    "split_date_range",
    "threshold_date_for",
    "utc_today",
    "merge_batches",
    "merge_ranges",
    "merge_summaries",
    "merge_summary_batches",
    "sort_rows",
    "DataSourcePreference",
    "SourceDecision",
    "UnavailableRange",
    "select_sources",
]
