"""Merge partial result sets into one report dimension.

Two different reconciliations are used, and both are approximations for
unique visitors:

* Across link-ID batches of one telemetry query, clicks are summed and the
  unique-visitor estimate is the mean of the per-batch counts, rounded up.
  A visitor can appear in several batches, so summing would over-count.
* Across the live and archived halves of a report, clicks are summed and the
  larger unique-visitor figure wins. The halves cover disjoint days, so a
  returning visitor would otherwise be counted twice.
"""

import math
from collections.abc import Iterable, Sequence
from typing import TypeVar

from tally_analytics.schemas.analytics import DimensionRow, SummaryStats, TimeseriesPoint

RowT = TypeVar("RowT", bound=DimensionRow)


def sort_rows(rows: Iterable[RowT]) -> list[RowT]:
    """Time series ascending by date, every other dimension by clicks descending."""
    rows = list(rows)
    if rows and isinstance(rows[0], TimeseriesPoint):
        return sorted(rows, key=lambda row: row.date)
    return sorted(rows, key=lambda row: row.clicks, reverse=True)


def merge_batches(batches: Sequence[Sequence[RowT]], limit: int | None = None) -> list[RowT]:
    """Combine the per-batch results of one batched telemetry query.

    The mean only counts batches in which the key actually appears.
    """
    clicks: dict[tuple, int] = {}
    visitor_sums: dict[tuple, int] = {}
    batch_counts: dict[tuple, int] = {}
    first_seen: dict[tuple, RowT] = {}

    for batch in batches:
        for row in batch:
            key = row.key()
            if key not in first_seen:
                first_seen[key] = row
                clicks[key] = 0
                visitor_sums[key] = 0
                batch_counts[key] = 0
            else:
                updates = first_seen[key].attribute_updates(row)
                if updates:
                    first_seen[key] = first_seen[key].model_copy(update=updates)
            clicks[key] += row.clicks
            visitor_sums[key] += row.unique_visitors
            batch_counts[key] += 1

    merged = [
        row.model_copy(update={
            "clicks": clicks[key],
            "unique_visitors": math.ceil(visitor_sums[key] / batch_counts[key]),
        })
        for key, row in first_seen.items()
    ]
    merged = sort_rows(merged)
    return merged[:limit] if limit is not None else merged


def merge_ranges(live: Iterable[RowT], archived: Iterable[RowT]) -> list[RowT]:
    """Combine live (telemetry) and archived (durable) rows for one dimension."""
    merged: dict[tuple, RowT] = {}

    for row in live:
        merged[row.key()] = row

    for row in archived:
        key = row.key()
        existing = merged.get(key)
        if existing is None:
            merged[key] = row
            continue
        merged[key] = existing.model_copy(update={
            **existing.attribute_updates(row),
            "clicks": existing.clicks + row.clicks,
            "unique_visitors": max(existing.unique_visitors, row.unique_visitors),
        })

    return sort_rows(merged.values())


def merge_summary_batches(batches: Sequence[SummaryStats]) -> SummaryStats:
    if not batches:
        return SummaryStats()
    return SummaryStats(
        total_clicks=sum(batch.total_clicks for batch in batches),
        unique_visitors=math.ceil(sum(batch.unique_visitors for batch in batches) / len(batches)),
    )


def merge_summaries(*summaries: SummaryStats) -> SummaryStats:
    if not summaries:
        return SummaryStats()
    return SummaryStats(
        total_clicks=sum(summary.total_clicks for summary in summaries),
        unique_visitors=max(summary.unique_visitors for summary in summaries),
    )
